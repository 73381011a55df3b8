"""Async engine and session factory shared by the API, scheduler and CLI."""

from typing import Any

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from seller_metrics_server.core.config import settings

logger = structlog.get_logger()

# Tables the reconciliation pipeline cannot run without
REQUIRED_TABLES = ("ebay_credentials", "ebay_orders", "inventory_items", "sync_logs")


def create_engine(url: str | None = None) -> AsyncEngine:
    """Build the async engine for the configured database.

    Pool sizing only applies to server databases; SQLite URLs (local runs)
    get the driver defaults.

    Args:
        url: Override for settings.database_url

    Returns:
        Async SQLAlchemy engine
    """
    database_url = url or settings.database_url
    options: dict[str, Any] = {"echo": settings.log_level == "DEBUG"}

    if not make_url(database_url).get_backend_name().startswith("sqlite"):
        # Sync passes hold one connection per concurrently processed seller
        options.update(
            pool_size=max(5, settings.sync_max_concurrency * 2),
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=300,
        )

    return create_async_engine(database_url, **options)


engine = create_engine()
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _missing_tables(conn: Any) -> list[str]:
    present = set(inspect(conn).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in present]


async def _migration_version(conn: AsyncConnection) -> str | None:
    if not await conn.run_sync(lambda c: inspect(c).has_table("alembic_version")):
        return None
    return (await conn.execute(text("SELECT version_num FROM alembic_version"))).scalar()


async def init_database() -> None:
    """Check the schema is in place before the scheduler starts syncing.

    The schema itself is owned by Alembic; this only reports what it finds
    so a fresh deployment logs a clear hint instead of failing mid-sync.
    """
    async with engine.connect() as conn:
        version = await _migration_version(conn)
        missing = await conn.run_sync(_missing_tables)

    if version is None or missing:
        logger.warning(
            "Database schema incomplete, run 'alembic upgrade head'",
            migration_version=version,
            missing_tables=missing,
        )
        return

    logger.info("Database ready", migration_version=version)


async def close_database() -> None:
    """Dispose of the connection pool."""
    await engine.dispose()
