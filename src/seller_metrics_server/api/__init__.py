"""HTTP routes.

``/health`` is open. Everything else lives under ``/api/v1`` and each of
those routers carries ``api_key_guard``.
"""

from litestar import Router

from seller_metrics_server.api.ebay import ebay_router
from seller_metrics_server.api.health import health_router
from seller_metrics_server.api.orders import orders_router

api_v1_router = Router(path="/api/v1", route_handlers=[ebay_router, orders_router])

api_routers = [health_router, api_v1_router]

__all__ = ["api_routers"]
