"""eBay REST API client.

Covers the OAuth consent/token endpoints, the Commerce Identity API and the
Sell Fulfillment ``getOrders`` call. Token values are never logged.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import Any
from urllib.parse import quote, urlencode

import httpx
import structlog
from pydantic import ValidationError

from seller_metrics_server.core.config import settings
from seller_metrics_server.schemas.ebay import (
    EbayOrderPayload,
    EbayOrdersPage,
    EbayTokenResponse,
    EbayUserResponse,
)
from seller_metrics_server.transformers.order import OrderTransformer, RemoteOrder

logger = structlog.get_logger()

ORDER_PAGE_SIZE = 50
MAX_ORDER_RECORDS = 1000  # hard safety cap per fetch (20 pages)
MAX_LOGGED_BODY = 500


class EbayApiError(Exception):
    """Non-2xx response from an eBay endpoint."""

    def __init__(self, status_code: int, response_body: str, endpoint: str) -> None:
        self.status_code = status_code
        self.response_body = response_body
        self.endpoint = endpoint
        super().__init__(f"eBay API {endpoint} failed with HTTP {status_code}")


@dataclass(frozen=True)
class TokenBundle:
    """Tokens issued by the eBay token endpoint."""

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int
    refresh_token_expires_in: int
    token_type: str
    scope: str

    def access_token_expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)

    def refresh_token_expires_at(self, now: datetime) -> datetime | None:
        """Refresh expiry, or None when eBay did not issue a new refresh token."""
        if not self.refresh_token or self.refresh_token_expires_in <= 0:
            return None
        return now + timedelta(seconds=self.refresh_token_expires_in)


@dataclass(frozen=True)
class EbayUserIdentity:
    user_id: str
    username: str


@dataclass(frozen=True)
class RejectedOrder:
    """An order eBay returned that could not be mapped."""

    order_id: str | None
    reason: str


@dataclass
class OrderFeed:
    """Orders fetched for one window.

    Iterates (and ``len``s) as the list of mapped orders. ``truncated`` is set
    when fetching stopped at the safety cap while eBay still had more pages.
    """

    orders: list[RemoteOrder] = field(default_factory=list)
    rejected: list[RejectedOrder] = field(default_factory=list)
    truncated: bool = False

    def __iter__(self) -> Iterator[RemoteOrder]:
        return iter(self.orders)

    def __len__(self) -> int:
        return len(self.orders)


def format_ebay_datetime(value: datetime) -> str:
    """Format a timestamp the way eBay filters expect: ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return f"{value.strftime('%Y-%m-%dT%H:%M:%S')}.{value.microsecond // 1000:03d}Z"


def _validation_summary(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class EbayApiClient:
    """Async client for the eBay endpoints used by order sync.

    Usage:
        async with EbayApiClient() as client:
            tokens = await client.exchange_code(code)
            feed = await client.fetch_orders(tokens.access_token, start, end)

    An ``httpx.AsyncClient`` can be injected (tests use ``httpx.MockTransport``);
    an injected client is not closed by this class.
    """

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        scopes: list[str] | None = None,
        auth_url: str | None = None,
        token_url: str | None = None,
        fulfillment_url: str | None = None,
        identity_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        page_size: int = ORDER_PAGE_SIZE,
        max_records: int = MAX_ORDER_RECORDS,
    ) -> None:
        """Initialize the client, defaulting everything from settings."""
        self.client_id = client_id if client_id is not None else settings.ebay_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.ebay_client_secret
        )
        self.redirect_uri = redirect_uri if redirect_uri is not None else settings.ebay_redirect_uri
        self.scopes = list(scopes) if scopes is not None else list(settings.ebay_scopes)
        self.auth_url = auth_url or settings.ebay_auth_url
        self.token_url = token_url or settings.ebay_token_url
        self.fulfillment_url = (fulfillment_url or settings.ebay_fulfillment_url).rstrip("/")
        self.identity_url = (identity_url or settings.ebay_identity_url).rstrip("/")
        self.page_size = page_size
        self.max_records = max_records
        self.max_pages = -(-max_records // page_size)

        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = timeout if timeout is not None else settings.ebay_http_timeout_seconds
        self.logger = logger.bind(component="ebay_client")

    async def __aenter__(self) -> EbayApiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def _request(self, method: str, url: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        response = await self.http.request(method, url, **kwargs)
        if response.is_success:
            return response

        body = response.text
        self.logger.error(
            "eBay API request failed",
            endpoint=endpoint,
            status_code=response.status_code,
            response_body=body[:MAX_LOGGED_BODY],
        )
        raise EbayApiError(response.status_code, body, endpoint)

    # =========================================================================
    # OAuth
    # =========================================================================

    def build_authorization_url(self, state: str) -> str:
        """Build the eBay consent URL. No network call.

        Args:
            state: Caller-generated anti-forgery token, echoed back on callback

        Returns:
            Absolute URL to redirect the user to
        """
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self.auth_url}?{urlencode(params, quote_via=quote)}"

    async def exchange_code(self, code: str) -> TokenBundle:
        """Exchange an authorization code for an access/refresh token pair.

        Args:
            code: Authorization code from the OAuth callback

        Returns:
            Issued tokens

        Raises:
            EbayApiError: If eBay rejects the exchange
        """
        response = await self._request(
            "POST",
            self.token_url,
            "token:authorization_code",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            auth=(self.client_id, self.client_secret),
        )
        self.logger.info("Exchanged authorization code for tokens")
        return self._parse_tokens(response)

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        """Get a new access token from a refresh token.

        eBay usually does not rotate the refresh token; the returned bundle
        then has an empty ``refresh_token``.

        Raises:
            EbayApiError: If eBay rejects the refresh
        """
        response = await self._request(
            "POST",
            self.token_url,
            "token:refresh_token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(self.scopes),
            },
            auth=(self.client_id, self.client_secret),
        )
        self.logger.info("Refreshed access token")
        return self._parse_tokens(response)

    @staticmethod
    def _parse_tokens(response: httpx.Response) -> TokenBundle:
        payload = EbayTokenResponse.model_validate(response.json())
        return TokenBundle(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_in=payload.expires_in,
            refresh_token_expires_in=payload.refresh_token_expires_in,
            token_type=payload.token_type,
            scope=payload.scope,
        )

    # =========================================================================
    # Identity
    # =========================================================================

    async def get_user_identity(self, access_token: str) -> EbayUserIdentity:
        """Fetch the eBay account behind an access token."""
        response = await self._request(
            "GET",
            f"{self.identity_url}/user",
            "identity:user",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        payload = EbayUserResponse.model_validate(response.json())
        return EbayUserIdentity(user_id=payload.user_id, username=payload.username)

    async def validate_token(self, access_token: str) -> bool:
        """Check whether eBay still accepts an access token.

        Any HTTP-level failure counts as invalid.
        """
        try:
            await self.get_user_identity(access_token)
        except (EbayApiError, httpx.HTTPError):
            return False
        return True

    # =========================================================================
    # Orders
    # =========================================================================

    async def iter_order_pages(
        self, access_token: str, start_date: datetime, end_date: datetime
    ) -> AsyncIterator[EbayOrdersPage]:
        """Yield ``getOrders`` pages for a creation-date window.

        Stops when eBay stops returning ``next``, when a page comes back
        empty, or once ``max_records`` orders or ``max_pages`` pages have
        been yielded.
        """
        order_filter = (
            f"creationdate:[{format_ebay_datetime(start_date)}"
            f"..{format_ebay_datetime(end_date)}]"
        )
        offset = 0
        fetched = 0

        for _ in range(self.max_pages):
            response = await self._request(
                "GET",
                f"{self.fulfillment_url}/order",
                "fulfillment:getOrders",
                params={"filter": order_filter, "limit": self.page_size, "offset": offset},
                headers={"Authorization": f"Bearer {access_token}"},
            )
            page = EbayOrdersPage.model_validate(response.json())
            yield page

            fetched += len(page.orders)
            if not page.next or not page.orders or fetched >= self.max_records:
                return
            offset += self.page_size

    async def fetch_orders(
        self, access_token: str, start_date: datetime, end_date: datetime
    ) -> OrderFeed:
        """Fetch and map all orders created in a window.

        Args:
            access_token: Valid user access token
            start_date: Window start (inclusive)
            end_date: Window end (inclusive)

        Returns:
            OrderFeed with mapped orders, rejected payloads and the truncation flag

        Raises:
            EbayApiError: If any page request fails
        """
        raw_orders: list[dict[str, Any]] = []
        has_more = False

        async for page in self.iter_order_pages(access_token, start_date, end_date):
            raw_orders.extend(page.orders)
            has_more = page.next is not None and bool(page.orders)

        feed = OrderFeed()
        # Truncated only when the cap stopped paging while eBay still had more
        at_cap = len(raw_orders) >= self.max_records
        if (at_cap and has_more) or len(raw_orders) > self.max_records:
            feed.truncated = True
            raw_orders = raw_orders[: self.max_records]
            self.logger.warning(
                "Order fetch hit safety cap, returning partial set",
                max_records=self.max_records,
                returned=len(raw_orders),
            )

        for raw in raw_orders:
            try:
                payload = EbayOrderPayload.model_validate(raw)
            except ValidationError as e:
                order_id = raw.get("orderId")
                reason = _validation_summary(e)
                feed.rejected.append(RejectedOrder(order_id=order_id, reason=reason))
                self.logger.warning("Rejected malformed order", order_id=order_id, reason=reason)
                continue
            feed.orders.append(OrderTransformer.transform(payload))

        self.logger.info(
            "Fetched orders",
            orders=len(feed.orders),
            rejected=len(feed.rejected),
            truncated=feed.truncated,
        )
        return feed
