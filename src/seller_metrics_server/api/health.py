"""Liveness endpoint."""

from litestar import Router, get

from seller_metrics_server import __version__
from seller_metrics_server.core.config import settings
from seller_metrics_server.services.scheduler import get_scheduler


@get("/health", sync_to_thread=False)
def health_check() -> dict[str, str | bool]:
    """Report that the process is up, which eBay environment it targets,
    and whether background syncing is running."""
    scheduler = get_scheduler()
    return {
        "status": "ok",
        "service": "seller-metrics-server",
        "version": __version__,
        "ebay_environment": settings.ebay_environment.value,
        "scheduler_running": scheduler is not None and scheduler.is_running,
    }


health_router = Router(path="/", route_handlers=[health_check])
