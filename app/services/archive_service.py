"""Archival of appointments whose time has passed."""

from datetime import UTC, datetime

import structlog
from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import TransactionalStore
from app.models.appointments import appointments

logger = structlog.get_logger()


async def archive_past_appointments(store: TransactionalStore, now: datetime | None = None) -> int:
    """
    Flag appointments that have ended as archived.

    Status is left untouched; archived rows simply drop out of default listings.

    Args:
        store: Transactional store
        now: Override for the current time

    Returns:
        Number of appointments archived
    """
    now = now or datetime.now(UTC)
    logger.info("appointment_archive_started")

    async def _archive(session: AsyncSession) -> int:
        result = await session.execute(
            update(appointments)
            .where(
                and_(
                    appointments.c.end_time < now,
                    appointments.c.is_archived.is_(False),
                )
            )
            .values(is_archived=True)
        )
        return result.rowcount or 0

    archived = await store.run_in_transaction(_archive)
    logger.info("appointment_archive_completed", archived=archived)
    return archived
