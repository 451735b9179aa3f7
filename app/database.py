"""Database configuration and connection management."""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import Request
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings

T = TypeVar("T")

SUPPORTED_ASYNC_DIALECTS = {"postgresql+asyncpg", "sqlite+aiosqlite"}
DRIVER_COERCIONS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def resolve_async_database_url(raw_url: str) -> str:
    """Ensure the configured DATABASE_URL uses an async-capable driver."""
    url = make_url(raw_url)
    drivername = url.drivername.lower()
    if drivername in SUPPORTED_ASYNC_DIALECTS:
        return raw_url

    base_driver = drivername.split("+", 1)[0]
    target_driver = DRIVER_COERCIONS.get(base_driver)
    if not target_driver:
        raise ValueError(
            f"Unsupported database dialect '{url.drivername}'. "
            "Use PostgreSQL (asyncpg), or SQLite with aiosqlite for testing."
        )

    return url.set(drivername=target_driver).render_as_string(hide_password=False)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite ignores SELECT ... FOR UPDATE, so a count-then-insert sequence is
    only serialized if the transaction holds the database lock from BEGIN.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    database_url = resolve_async_database_url(settings.database_url)
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(
            database_url,
            echo=settings.debug,
            connect_args={"timeout": 30},
        )
        _use_immediate_transactions(engine)
        return engine

    # PostgreSQL with connection pooling
    return create_async_engine(
        database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "application_name": settings.app_name,
            },
        },
    )


class TransactionalStore:
    """Runs units of work inside a single database transaction.

    Every capacity decision (count confirmed appointments, then write) happens
    inside one call to ``run_in_transaction`` so the count is never carried
    across a commit boundary.
    """

    def __init__(self, engine: AsyncEngine):
        """Initialize store with an async engine."""
        self.engine = engine
        self._session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def run_in_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Execute ``fn`` inside one transaction.

        Commits when ``fn`` returns, rolls back and re-raises when it fails.

        Args:
            fn: Coroutine function receiving the transaction-scoped session

        Returns:
            Whatever ``fn`` returns
        """
        async with self._session_factory() as session:
            async with session.begin():
                return await fn(session)

    async def check_connection(self) -> bool:
        """Check if database connection is healthy."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self.engine.dispose()


def get_store(request: Request) -> TransactionalStore:
    """Dependency returning the store created at application startup."""
    return request.app.state.store


def integrity_error_mentions(exc: IntegrityError, *markers: str) -> bool:
    """Whether the driver's message for ``exc`` names one of ``markers``.

    PostgreSQL reports the violated constraint by name, SQLite by its columns,
    so callers pass both.
    """
    error_msg = str(exc.orig) if hasattr(exc, "orig") else str(exc)
    return any(marker in error_msg for marker in markers)
