"""Shared test fixtures."""

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from seller_metrics_server.core.security import TokenEncryption
from seller_metrics_server.models import EbayCredential, EbayOrder, InventoryItem, Money
from seller_metrics_server.models.base import Base
from seller_metrics_server.services.ebay_client import EbayApiClient

SANDBOX_AUTH_URL = "https://auth.sandbox.ebay.com/oauth2/authorize"
SANDBOX_TOKEN_URL = "https://api.sandbox.ebay.com/identity/v1/oauth2/token"
SANDBOX_FULFILLMENT_URL = "https://api.sandbox.ebay.com/sell/fulfillment/v1"
SANDBOX_IDENTITY_URL = "https://apiz.sandbox.ebay.com/commerce/identity/v1"


@pytest.fixture
async def async_engine():
    """Create async SQLite engine for testing.

    pysqlite's own transaction handling is switched off so that SAVEPOINT
    (``session.begin_nested()``) behaves like it does on PostgreSQL.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for code that opens its own sessions (orchestrator)."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory) -> AsyncIterator[AsyncSession]:
    """Create async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def encryption() -> TokenEncryption:
    """Token codec with a throwaway key."""
    return TokenEncryption(Fernet.generate_key())


# =============================================================================
# Fake eBay API
# =============================================================================


class FakeEbay:
    """In-memory stand-in for the eBay token, identity and getOrders endpoints.

    Orders are served per bearer token so that several users can be synced
    against the same fake. A bearer token listed in ``failing_tokens`` gets a
    500 from getOrders.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.orders: dict[str, list[dict[str, Any]]] = {}
        self.failing_tokens: set[str] = set()
        self.always_next = False
        self.token_response: dict[str, Any] = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 7200,
            "refresh_token_expires_in": 47304000,
            "token_type": "User Access Token",
        }
        self.refresh_response: dict[str, Any] = {
            "access_token": "access-refreshed",
            "expires_in": 7200,
            "token_type": "User Access Token",
        }
        self.identity: dict[str, Any] = {"userId": "ebay-uid-1", "username": "vintage_finds"}
        self.token_error: httpx.Response | None = None
        self.identity_error: httpx.Response | None = None

    def requests_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/oauth2/token"):
            if self.token_error is not None:
                return self.token_error
            form = dict(parse_qsl(request.content.decode()))
            if form.get("grant_type") == "refresh_token":
                return httpx.Response(200, json=self.refresh_response)
            return httpx.Response(200, json=self.token_response)

        if path.endswith("/user"):
            if self.identity_error is not None:
                return self.identity_error
            return httpx.Response(200, json=self.identity)

        if path.endswith("/order"):
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if token in self.failing_tokens:
                return httpx.Response(500, text="Internal Server Error")
            orders = self.orders.get(token, [])
            limit = int(request.url.params["limit"])
            offset = int(request.url.params["offset"])
            body: dict[str, Any] = {
                "orders": orders[offset : offset + limit],
                "total": len(orders),
                "limit": limit,
                "offset": offset,
            }
            if self.always_next or offset + limit < len(orders):
                body["next"] = f"{SANDBOX_FULFILLMENT_URL}/order?offset={offset + limit}"
            return httpx.Response(200, json=body)

        return httpx.Response(404, text="Not Found")


@pytest.fixture
def fake_ebay() -> FakeEbay:
    return FakeEbay()


@pytest.fixture
async def ebay_client(fake_ebay: FakeEbay) -> AsyncIterator[EbayApiClient]:
    """EbayApiClient wired to the fake eBay API."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_ebay.handler))
    client = EbayApiClient(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="Test_Seller-RuName",
        scopes=[
            "https://api.ebay.com/oauth/api_scope",
            "https://api.ebay.com/oauth/api_scope/sell.fulfillment.readonly",
        ],
        auth_url=SANDBOX_AUTH_URL,
        token_url=SANDBOX_TOKEN_URL,
        fulfillment_url=SANDBOX_FULFILLMENT_URL,
        identity_url=SANDBOX_IDENTITY_URL,
        http_client=http_client,
    )
    yield client
    await http_client.aclose()


@pytest.fixture
def make_ebay_order() -> Callable[..., dict[str, Any]]:
    """Build a raw getOrders order payload."""

    def build(
        order_id: str,
        *,
        created: datetime | None = None,
        sku: str | None = None,
        title: str = "Vintage Camera",
        total: str = "25.00",
        delivery: str = "5.00",
        fee: str | None = "3.25",
        payment_fee: str | None = None,
        fulfillment: str = "NOT_STARTED",
        payment: str = "PAID",
        cancel_state: str | None = None,
        currency: str = "USD",
    ) -> dict[str, Any]:
        created = created or datetime.now(UTC) - timedelta(days=1)
        pricing: dict[str, Any] = {
            "total": {"value": total, "currency": currency},
            "deliveryCost": {"value": delivery, "currency": currency},
        }
        if fee is not None:
            pricing["fee"] = {"value": fee, "currency": currency}
        if payment_fee is not None:
            pricing["paymentProcessingFee"] = {"value": payment_fee, "currency": currency}

        line_item: dict[str, Any] = {
            "lineItemId": f"{order_id}-1",
            "legacyItemId": "110012345678",
            "title": title,
            "quantity": 1,
        }
        if sku is not None:
            line_item["sku"] = sku

        payload: dict[str, Any] = {
            "orderId": order_id,
            "legacyOrderId": f"legacy-{order_id}",
            "creationDate": created.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "orderFulfillmentStatus": fulfillment,
            "orderPaymentStatus": payment,
            "buyer": {"username": "buyer_one"},
            "pricingSummary": pricing,
            "lineItems": [line_item],
        }
        if cancel_state is not None:
            payload["cancelStatus"] = {"cancelState": cancel_state}
        return payload

    return build


# =============================================================================
# Database rows
# =============================================================================


@pytest.fixture
def make_credential(
    encryption: TokenEncryption,
) -> Callable[..., Any]:
    """Insert a connected credential and commit.

    Expiry offsets are relative to the real clock.
    """

    async def create(
        session: AsyncSession,
        user_id: str = "user-1",
        *,
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        access_expires_in: timedelta = timedelta(hours=2),
        refresh_expires_in: timedelta = timedelta(days=500),
        is_connected: bool = True,
        last_synced_at: datetime | None = None,
    ) -> EbayCredential:
        now = datetime.now(UTC)
        credential = EbayCredential(
            user_id=user_id,
            ebay_user_id=f"ebay-{user_id}",
            ebay_username=f"seller_{user_id}",
            access_token_encrypted=encryption.encrypt(access_token),
            refresh_token_encrypted=encryption.encrypt(refresh_token),
            access_token_expires_at=now + access_expires_in,
            refresh_token_expires_at=now + refresh_expires_in,
            scopes="https://api.ebay.com/oauth/api_scope",
            is_connected=is_connected,
            last_synced_at=last_synced_at,
        )
        session.add(credential)
        await session.commit()
        return credential

    return create


@pytest.fixture
def make_inventory_item() -> Callable[..., Any]:
    """Insert an unsold inventory item and commit."""

    async def create(
        session: AsyncSession,
        user_id: str = "user-1",
        *,
        title: str = "Vintage Camera",
        ebay_sku: str | None = None,
        internal_sku: str | None = None,
        cost: str = "10.00",
        currency: str = "USD",
    ) -> InventoryItem:
        item = InventoryItem(
            user_id=user_id,
            title=title,
            ebay_sku=ebay_sku,
            internal_sku=internal_sku,
            cost=Money(Decimal(cost), currency),
        )
        session.add(item)
        await session.commit()
        return item

    return create


@pytest.fixture
def make_order() -> Callable[..., Any]:
    """Insert a reconciled eBay order and commit."""

    async def create(
        session: AsyncSession,
        user_id: str = "user-1",
        ebay_order_id: str = "12-00001-00001",
        order_date: datetime | None = None,
        status: str = "active",
    ) -> EbayOrder:
        order = EbayOrder(
            user_id=user_id,
            ebay_order_id=ebay_order_id,
            order_date=order_date or datetime(2026, 3, 1, tzinfo=UTC),
            buyer_username="buyer_one",
            item_title="Vintage Camera",
            quantity=1,
            status=status,
            payment_status="paid",
            fulfillment_status="not_started",
            gross_sale=Money.of("100.00"),
            shipping_paid=Money.of("10.00"),
            shipping_actual=Money.zero(),
            final_value_fee=Money.of("13.00"),
            payment_processing_fee=Money.zero(),
            additional_fees=Money.zero(),
            last_synced_at=datetime(2026, 3, 1, tzinfo=UTC),
        )
        session.add(order)
        await session.commit()
        return order

    return create
