"""Service-to-service authentication.

End users sign in to the bookkeeping application, never to this server. The
bookkeeping backend calls us on their behalf with a shared API key and passes
the user id it has already authenticated.
"""

import secrets
from typing import Any

import structlog
from litestar.connection import ASGIConnection
from litestar.exceptions import NotAuthorizedException
from litestar.handlers import BaseRouteHandler

from seller_metrics_server.core.config import settings

logger = structlog.get_logger()

BEARER_PREFIX = "bearer "


def presented_api_key(connection: ASGIConnection[Any, Any, Any, Any]) -> str | None:
    """Key sent by the caller, from X-API-Key or an Authorization bearer token."""
    if key := connection.headers.get("X-API-Key"):
        return key

    authorization = connection.headers.get("Authorization", "")
    if authorization.lower().startswith(BEARER_PREFIX):
        return authorization[len(BEARER_PREFIX) :].strip() or None
    return None


def is_trusted_caller(key: str | None) -> bool:
    """Compare a presented key with settings.api_key in constant time."""
    if not key or not settings.api_key:
        return False
    return secrets.compare_digest(key.encode(), settings.api_key.encode())


async def api_key_guard(
    connection: ASGIConnection[Any, Any, Any, Any], _: BaseRouteHandler
) -> None:
    """Reject requests that do not carry the bookkeeping backend's key.

    With no API_KEY configured the server runs open, which is only meant for
    local development against the eBay sandbox.

    Raises:
        NotAuthorizedException: Key missing or wrong
    """
    if not settings.api_key:
        return

    key = presented_api_key(connection)
    if is_trusted_caller(key):
        return

    logger.warning(
        "Rejected unauthenticated request",
        path=connection.url.path,
        key_present=key is not None,
    )
    if key is None:
        raise NotAuthorizedException("Missing API key. Use X-API-Key header.")
    raise NotAuthorizedException("Invalid API key")
