"""Endpoints the bookkeeping backend calls to connect sellers and sync orders.

The OAuth flow is two calls: ``authorize`` hands back the eBay consent URL
plus a single-use state, and eBay sends the seller to ``oauth/callback``
with that state and a code. Responses never include token material.
"""

import asyncio
import re
import secrets
from collections import OrderedDict
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from litestar import Router, get, post
from litestar.exceptions import NotAuthorizedException, NotFoundException, ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy.ext.asyncio import AsyncSession

from seller_metrics_server.core.auth import api_key_guard
from seller_metrics_server.core.database import async_session_maker
from seller_metrics_server.models.sync_log import SyncTrigger
from seller_metrics_server.schemas.ebay import ConnectionStatus
from seller_metrics_server.services.credentials import CredentialService
from seller_metrics_server.services.ebay_client import EbayApiClient, EbayApiError
from seller_metrics_server.services.scheduler import get_scheduler
from seller_metrics_server.services.sync_orchestrator import SyncOrchestrator

logger = structlog.get_logger()

USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_user_id(user_id: str) -> str:
    """Check a path user_id against the bookkeeping app's id format.

    Raises:
        ValidationException: If user_id format is invalid
    """
    if not user_id or len(user_id) > 450:
        raise ValidationException("Invalid user_id: must be 1-450 characters")
    if not USER_ID_PATTERN.match(user_id):
        raise ValidationException("Invalid user_id: must be alphanumeric with _ or - only")
    return user_id


class PendingAuthorizations:
    """OAuth ``state`` values handed out but not yet redeemed.

    Each state maps to the user who started the flow, is valid for
    ``ttl_minutes`` and can be redeemed once. At ``maxsize`` the oldest
    pending flow is dropped.
    """

    def __init__(self, maxsize: int = 1000, ttl_minutes: int = 10) -> None:
        self._pending: OrderedDict[str, tuple[str, datetime]] = OrderedDict()
        self._maxsize = maxsize
        self._ttl = timedelta(minutes=ttl_minutes)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    async def issue(self, user_id: str, now: datetime | None = None) -> str:
        """Create a fresh state for ``user_id``."""
        now = now or datetime.now(UTC)
        state = secrets.token_urlsafe(32)
        async with self._lock:
            self._drop_expired(now)
            while len(self._pending) >= self._maxsize:
                self._pending.popitem(last=False)
                logger.warning("Dropped oldest pending eBay authorization", maxsize=self._maxsize)
            self._pending[state] = (user_id, now + self._ttl)
        return state

    async def redeem(self, state: str, now: datetime | None = None) -> str | None:
        """Consume ``state`` and return its user, or None if unknown or expired."""
        now = now or datetime.now(UTC)
        async with self._lock:
            self._drop_expired(now)
            entry = self._pending.pop(state, None)
        return entry[0] if entry else None

    def _drop_expired(self, now: datetime) -> None:
        for state in [s for s, (_, expires_at) in self._pending.items() if expires_at < now]:
            del self._pending[state]


_pending_authorizations = PendingAuthorizations()


def _get_orchestrator() -> SyncOrchestrator:
    scheduler = get_scheduler()
    if scheduler is not None:
        return scheduler.orchestrator
    return SyncOrchestrator(async_session_maker)


# =============================================================================
# Connection
# =============================================================================


@get("/users/{user_id:str}/ebay/authorize", status_code=HTTP_200_OK)
async def get_authorization_url(user_id: str) -> dict[str, str]:
    """Start the eBay OAuth flow for a user.

    Returns:
        ``authorization_url`` to redirect the user to, and the ``state``
        that eBay will echo back on the callback
    """
    validate_user_id(user_id)

    state = await _pending_authorizations.issue(user_id)

    async with EbayApiClient() as client:
        url = client.build_authorization_url(state)

    logger.info("Starting eBay OAuth flow", user_id=user_id)
    return {"authorization_url": url, "state": state}


@get("/ebay/oauth/callback", status_code=HTTP_200_OK)
async def oauth_callback(
    session: AsyncSession,
    code: str | None = None,
    oauth_state: str | None = Parameter(default=None, query="state"),
    error: str | None = None,
) -> ConnectionStatus:
    """Complete the eBay OAuth flow.

    Raises:
        NotAuthorizedException: If eBay reported an error, or the state is
            unknown, expired, or already used
    """
    if error or not code:
        if oauth_state:
            await _pending_authorizations.redeem(oauth_state)
        raise NotAuthorizedException(f"eBay authorization failed: {error or 'No code received'}")

    user_id = await _pending_authorizations.redeem(oauth_state) if oauth_state else None
    if user_id is None:
        raise NotAuthorizedException("Invalid or expired OAuth state")

    async with EbayApiClient() as client:
        service = CredentialService(session, client)
        try:
            await service.connect(user_id, code)
        except EbayApiError as e:
            raise NotAuthorizedException(
                f"eBay rejected the authorization (HTTP {e.status_code})"
            ) from e
        await session.commit()
        return await service.get_status(user_id)


@get("/users/{user_id:str}/ebay/status", status_code=HTTP_200_OK)
async def get_connection_status(user_id: str, session: AsyncSession) -> ConnectionStatus:
    """Get a user's eBay connection status."""
    validate_user_id(user_id)

    async with EbayApiClient() as client:
        return await CredentialService(session, client).get_status(user_id)


@post("/users/{user_id:str}/ebay/disconnect", status_code=HTTP_200_OK)
async def disconnect(user_id: str, session: AsyncSession) -> dict[str, Any]:
    """Disconnect a user's eBay account and drop stored tokens.

    Raises:
        NotFoundException: If the user never connected
    """
    validate_user_id(user_id)

    async with EbayApiClient() as client:
        disconnected = await CredentialService(session, client).disconnect(user_id)
    if not disconnected:
        raise NotFoundException(f"No eBay connection for user {user_id}")

    await session.commit()
    return {"user_id": user_id, "disconnected": True}


# =============================================================================
# Sync
# =============================================================================


@post("/users/{user_id:str}/ebay/sync", status_code=HTTP_200_OK)
async def trigger_sync(user_id: str) -> dict[str, Any]:
    """Sync a user's eBay orders now.

    Returns:
        Sync outcome with counts and any errors

    Example:
        POST /api/v1/users/abc-123/ebay/sync
    """
    validate_user_id(user_id)

    outcome = await _get_orchestrator().sync_user(user_id, trigger=SyncTrigger.MANUAL)
    return outcome.to_dict()


@get("/users/{user_id:str}/ebay/sync/history", status_code=HTTP_200_OK)
async def get_sync_history(
    user_id: str,
    limit: int = Parameter(default=10, ge=1, le=100),
) -> list[dict[str, Any]]:
    """Recent sync log entries for a user."""
    validate_user_id(user_id)

    logs = await _get_orchestrator().get_user_sync_history(user_id, limit=limit)
    return [
        {
            "job_id": log.job_id,
            "operation": log.operation,
            "trigger": log.trigger,
            "status": log.status,
            "started_at": log.started_at.isoformat() if log.started_at else None,
            "duration_ms": log.duration_ms,
            "error_type": log.error_type,
            "error_message": log.error_message,
            "orders_created": log.orders_created,
            "orders_updated": log.orders_updated,
        }
        for log in logs
    ]


@get("/ebay/sync/status", status_code=HTTP_200_OK)
async def get_scheduler_status() -> dict[str, Any]:
    """Background scheduler status: next runs and last pass reports."""
    scheduler = get_scheduler()
    if scheduler is None:
        return {"enabled": False, "is_running": False}
    return scheduler.get_status()


ebay_router = Router(
    path="/",
    guards=[api_key_guard],
    route_handlers=[
        get_authorization_url,
        oauth_callback,
        get_connection_status,
        disconnect,
        trigger_sync,
        get_sync_history,
        get_scheduler_status,
    ],
)
