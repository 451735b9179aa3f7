#!/usr/bin/env python3
"""Create all tables directly from the table metadata.

Intended for local development and SQLite databases; PostgreSQL deployments
run the Alembic migrations instead (``alembic upgrade head``).
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.config import get_settings  # noqa: E402
from app.database import create_engine_from_settings  # noqa: E402
from app.models import metadata  # noqa: E402


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    settings = get_settings()
    engine = create_engine_from_settings(settings)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print(f"✓ Created {len(metadata.tables)} tables")


if __name__ == "__main__":
    asyncio.run(init_db())
