"""Litestar application wiring: routes, database plugin and scheduler lifespan."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from advanced_alchemy.config.asyncio import AsyncSessionConfig
from litestar import Litestar
from litestar.contrib.sqlalchemy.plugins import SQLAlchemyAsyncConfig, SQLAlchemyPlugin
from litestar.openapi import OpenAPIConfig

from seller_metrics_server import __version__
from seller_metrics_server.api import api_routers
from seller_metrics_server.core import database
from seller_metrics_server.core.config import settings
from seller_metrics_server.core.logging import configure_logging
from seller_metrics_server.services.scheduler import SyncScheduler, set_scheduler

configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def run_scheduler(app: Litestar) -> AsyncIterator[None]:
    """Own the background sync scheduler for the lifetime of the process.

    On shutdown the scheduler stops before the pool is disposed, so a pass
    that is mid-flight finishes its current seller and starts no new one.
    """
    logger.info(
        "seller-metrics-server starting",
        version=__version__,
        ebay_environment=settings.ebay_environment.value,
        sync_enabled=settings.sync_enabled,
        sync_interval_minutes=settings.sync_interval_minutes,
        token_refresh_interval_minutes=settings.token_refresh_interval_minutes,
    )
    await database.init_database()

    scheduler = SyncScheduler(database.async_session_maker)
    set_scheduler(scheduler)
    await scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        set_scheduler(None)
        await database.close_database()
        logger.info("seller-metrics-server stopped")


def create_app() -> Litestar:
    """Build the ASGI app served by `seller-metrics-server serve`."""
    sqlalchemy = SQLAlchemyPlugin(
        config=SQLAlchemyAsyncConfig(
            engine_instance=database.engine,
            session_dependency_key="session",
            session_config=AsyncSessionConfig(expire_on_commit=False),
        ),
    )
    openapi = OpenAPIConfig(
        title="seller-metrics-server",
        version=__version__,
        description="eBay connection, order sync and reconciliation for seller bookkeeping",
    )
    return Litestar(
        route_handlers=api_routers,
        lifespan=[run_scheduler],
        openapi_config=openapi,
        plugins=[sqlalchemy],
        debug=settings.log_level == "DEBUG",
    )


app = create_app()
