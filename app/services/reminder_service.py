"""Appointment reminder scheduling."""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException
from app.database import TransactionalStore
from app.models.payments import reminders
from app.schemas.reminders import ReminderResponse, ReminderType

logger = structlog.get_logger()


class ReminderService:
    """Service for appointment reminders.

    One reminder row exists per appointment. Reminders are never scheduled in
    the past: when the lead time has already elapsed the reminder is cancelled
    instead.
    """

    def __init__(
        self,
        store: TransactionalStore,
        reminder_type: ReminderType = ReminderType.TWENTY_FOUR_HOUR,
    ):
        """Initialize service with the transactional store and reminder lead type."""
        self.store = store
        self.reminder_type = reminder_type

    def scheduled_for(self, appointment_start: datetime) -> datetime:
        """When the reminder for an appointment starting at ``appointment_start`` fires."""
        return appointment_start - timedelta(hours=self.reminder_type.hours_before)

    @staticmethod
    async def _get_for_appointment(
        session: AsyncSession, appointment_id: UUID
    ) -> dict[str, Any] | None:
        result = await session.execute(
            select(reminders).where(reminders.c.appointment_id == appointment_id)
        )
        row = result.mappings().first()
        return dict(row) if row else None

    async def create_reminder(
        self,
        appointment_id: UUID,
        appointment_start: datetime,
        now: datetime | None = None,
    ) -> ReminderResponse | None:
        """
        Schedule the reminder for an appointment.

        Args:
            appointment_id: Appointment ID
            appointment_start: Appointment start time
            now: Override for the current time

        Returns:
            The reminder, or None when the lead time has already passed
        """
        now = now or datetime.now(UTC)
        fire_at = self.scheduled_for(appointment_start)
        if fire_at <= now:
            logger.info(
                "reminder_skipped_lead_time_passed",
                appointment_id=str(appointment_id),
                appointment_start=appointment_start.isoformat(),
            )
            return None

        async def _create(session: AsyncSession) -> dict[str, Any]:
            existing = await self._get_for_appointment(session, appointment_id)
            if existing:
                return existing
            result = await session.execute(
                insert(reminders)
                .values(
                    appointment_id=appointment_id,
                    scheduled_for=fire_at,
                    reminder_type=self.reminder_type.value,
                )
                .returning(reminders)
            )
            return dict(result.mappings().one())

        row = await self.store.run_in_transaction(_create)
        logger.info(
            "reminder_scheduled",
            appointment_id=str(appointment_id),
            scheduled_for=row["scheduled_for"].isoformat(),
        )
        return ReminderResponse.model_validate(row)

    async def cancel_reminder(
        self,
        appointment_id: UUID,
        now: datetime | None = None,
    ) -> ReminderResponse | None:
        """Cancel the pending reminder of an appointment, if any."""
        now = now or datetime.now(UTC)

        async def _cancel(session: AsyncSession) -> dict[str, Any] | None:
            result = await session.execute(
                update(reminders)
                .where(
                    and_(
                        reminders.c.appointment_id == appointment_id,
                        reminders.c.sent_at.is_(None),
                        reminders.c.cancelled_at.is_(None),
                    )
                )
                .values(cancelled_at=now)
                .returning(reminders)
            )
            row = result.mappings().first()
            return dict(row) if row else None

        row = await self.store.run_in_transaction(_cancel)
        if row is None:
            return None

        logger.info("reminder_cancelled", appointment_id=str(appointment_id))
        return ReminderResponse.model_validate(row)

    async def update_reminder_for_reschedule(
        self,
        appointment_id: UUID,
        new_start_time: datetime,
        now: datetime | None = None,
    ) -> ReminderResponse | None:
        """
        Recompute a reminder against a new appointment time.

        Creates the reminder when absent. When the new time is too close for
        the lead time, the reminder is cancelled rather than moved into the past.

        Returns:
            The rescheduled reminder, or None when no reminder will fire
        """
        now = now or datetime.now(UTC)
        fire_at = self.scheduled_for(new_start_time)

        if fire_at <= now:
            await self.cancel_reminder(appointment_id, now=now)
            return None

        async def _reschedule(session: AsyncSession) -> dict[str, Any]:
            existing = await self._get_for_appointment(session, appointment_id)
            if existing is None:
                result = await session.execute(
                    insert(reminders)
                    .values(
                        appointment_id=appointment_id,
                        scheduled_for=fire_at,
                        reminder_type=self.reminder_type.value,
                    )
                    .returning(reminders)
                )
            else:
                result = await session.execute(
                    update(reminders)
                    .where(reminders.c.id == existing["id"])
                    .values(scheduled_for=fire_at, sent_at=None, cancelled_at=None)
                    .returning(reminders)
                )
            return dict(result.mappings().one())

        row = await self.store.run_in_transaction(_reschedule)
        logger.info(
            "reminder_rescheduled",
            appointment_id=str(appointment_id),
            scheduled_for=fire_at.isoformat(),
        )
        return ReminderResponse.model_validate(row)

    async def get_due_reminders(
        self,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[ReminderResponse]:
        """Reminders whose time has come and that were neither sent nor cancelled."""
        now = now or datetime.now(UTC)
        stmt = (
            select(reminders)
            .where(
                and_(
                    reminders.c.scheduled_for <= now,
                    reminders.c.sent_at.is_(None),
                    reminders.c.cancelled_at.is_(None),
                )
            )
            .order_by(reminders.c.scheduled_for)
            .limit(limit)
        )

        async def _due(session: AsyncSession) -> list[ReminderResponse]:
            result = await session.execute(stmt)
            return [ReminderResponse.model_validate(dict(row)) for row in result.mappings()]

        return await self.store.run_in_transaction(_due)

    async def mark_reminder_sent(
        self,
        reminder_id: UUID,
        now: datetime | None = None,
    ) -> ReminderResponse:
        """Record that a reminder was delivered."""
        now = now or datetime.now(UTC)

        async def _mark(session: AsyncSession) -> dict[str, Any]:
            result = await session.execute(
                update(reminders)
                .where(reminders.c.id == reminder_id)
                .values(sent_at=now)
                .returning(reminders)
            )
            row = result.mappings().first()
            if row is None:
                raise NotFoundException("Reminder not found")
            return dict(row)

        row = await self.store.run_in_transaction(_mark)
        logger.info("reminder_sent", reminder_id=str(reminder_id))
        return ReminderResponse.model_validate(row)
