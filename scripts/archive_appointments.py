#!/usr/bin/env python3
"""
Archive appointments whose end time has passed.

Meant to run periodically (cron, scheduled job).

Usage:
    python scripts/archive_appointments.py
    python scripts/archive_appointments.py --before 2026-01-01T00:00:00+00:00
"""

import argparse
import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.config import get_settings  # noqa: E402
from app.database import TransactionalStore, create_engine_from_settings  # noqa: E402
from app.middleware.logging import configure_logging  # noqa: E402
from app.services.archive_service import archive_past_appointments  # noqa: E402


async def run(before: datetime | None) -> int:
    """Archive past appointments and return how many were flagged."""
    settings = get_settings()
    configure_logging(settings)
    store = TransactionalStore(create_engine_from_settings(settings))
    try:
        return await archive_past_appointments(store, now=before)
    finally:
        await store.dispose()


def main() -> None:
    """Parse arguments and run the archival job."""
    parser = argparse.ArgumentParser(description="Archive past appointments")
    parser.add_argument(
        "--before",
        type=datetime.fromisoformat,
        default=None,
        help="Archive appointments ending before this ISO timestamp (default: now)",
    )
    args = parser.parse_args()

    before = args.before
    if before is not None and before.tzinfo is None:
        before = before.replace(tzinfo=UTC)

    archived = asyncio.run(run(before))
    print(f"✓ Archived {archived} appointments")


if __name__ == "__main__":
    main()
