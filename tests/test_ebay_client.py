"""Tests for the eBay REST client against a mocked transport."""

import base64
from datetime import UTC, datetime, timedelta, timezone
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest
from pydantic import ValidationError

from seller_metrics_server.schemas.ebay import (
    DEFAULT_ACCESS_TOKEN_EXPIRES_IN,
    DEFAULT_REFRESH_TOKEN_EXPIRES_IN,
    DEFAULT_TOKEN_TYPE,
)
from seller_metrics_server.services.ebay_client import (
    MAX_ORDER_RECORDS,
    EbayApiClient,
    EbayApiError,
    TokenBundle,
    format_ebay_datetime,
)

WINDOW_START = datetime(2026, 3, 1, tzinfo=UTC)
WINDOW_END = datetime(2026, 3, 8, 12, 30, 45, 123000, tzinfo=UTC)


def form_of(request: httpx.Request) -> dict[str, str]:
    return dict(parse_qsl(request.content.decode()))


# =============================================================================
# OAuth
# =============================================================================


def test_build_authorization_url(ebay_client) -> None:
    url = ebay_client.build_authorization_url("state-abc")

    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
        "https://auth.sandbox.ebay.com/oauth2/authorize"
    )
    assert query["client_id"] == ["test-client-id"]
    assert query["response_type"] == ["code"]
    assert query["redirect_uri"] == ["Test_Seller-RuName"]
    assert query["state"] == ["state-abc"]
    assert query["scope"] == [
        "https://api.ebay.com/oauth/api_scope "
        "https://api.ebay.com/oauth/api_scope/sell.fulfillment.readonly"
    ]
    # scopes are space separated and percent-encoded, not '+' joined
    assert "%20" in parsed.query


def test_build_authorization_url_makes_no_request(ebay_client, fake_ebay) -> None:
    ebay_client.build_authorization_url("state-abc")

    assert fake_ebay.requests == []


async def test_exchange_code_sends_basic_auth_and_form(ebay_client, fake_ebay) -> None:
    tokens = await ebay_client.exchange_code("auth-code-1")

    (request,) = fake_ebay.requests
    expected = base64.b64encode(b"test-client-id:test-client-secret").decode()
    assert request.method == "POST"
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert form_of(request) == {
        "grant_type": "authorization_code",
        "code": "auth-code-1",
        "redirect_uri": "Test_Seller-RuName",
    }
    assert tokens.access_token == "access-1"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expires_in == 7200


async def test_token_response_defaults(ebay_client, fake_ebay) -> None:
    fake_ebay.token_response = {"access_token": "access-only"}

    tokens = await ebay_client.exchange_code("auth-code-1")

    assert tokens.expires_in == DEFAULT_ACCESS_TOKEN_EXPIRES_IN == 7200
    assert tokens.refresh_token_expires_in == DEFAULT_REFRESH_TOKEN_EXPIRES_IN == 47_304_000
    assert tokens.token_type == DEFAULT_TOKEN_TYPE == "Bearer"


async def test_token_response_without_access_token_is_rejected(ebay_client, fake_ebay) -> None:
    fake_ebay.token_response = {"access_token": "", "refresh_token": "refresh-1"}

    with pytest.raises(ValidationError):
        await ebay_client.exchange_code("auth-code-1")


async def test_exchange_code_error_raises_api_error(ebay_client, fake_ebay) -> None:
    fake_ebay.token_error = httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(EbayApiError) as exc_info:
        await ebay_client.exchange_code("expired-code")

    assert exc_info.value.status_code == 400
    assert exc_info.value.endpoint == "token:authorization_code"
    assert "invalid_grant" in exc_info.value.response_body


async def test_refresh_token_request(ebay_client, fake_ebay) -> None:
    tokens = await ebay_client.refresh_token("refresh-1")

    (request,) = fake_ebay.requests
    form = form_of(request)
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "refresh-1"
    assert form["scope"] == " ".join(ebay_client.scopes)
    assert tokens.access_token == "access-refreshed"


async def test_refresh_without_rotation_has_no_refresh_expiry(ebay_client) -> None:
    now = datetime(2026, 3, 1, tzinfo=UTC)

    tokens = await ebay_client.refresh_token("refresh-1")

    assert tokens.refresh_token == ""
    assert tokens.refresh_token_expires_at(now) is None
    assert tokens.access_token_expires_at(now) == now + timedelta(seconds=7200)


def test_token_bundle_repr_hides_tokens() -> None:
    bundle = TokenBundle("secret-access", "secret-refresh", 7200, 100, "Bearer", "")

    assert "secret" not in repr(bundle)


# =============================================================================
# Identity
# =============================================================================


async def test_get_user_identity(ebay_client, fake_ebay) -> None:
    identity = await ebay_client.get_user_identity("access-1")

    (request,) = fake_ebay.requests
    assert request.headers["Authorization"] == "Bearer access-1"
    assert identity.user_id == "ebay-uid-1"
    assert identity.username == "vintage_finds"


async def test_validate_token(ebay_client, fake_ebay) -> None:
    assert await ebay_client.validate_token("access-1") is True

    fake_ebay.identity_error = httpx.Response(401, json={"errors": []})
    assert await ebay_client.validate_token("access-1") is False


# =============================================================================
# Orders
# =============================================================================


def test_format_ebay_datetime() -> None:
    assert format_ebay_datetime(WINDOW_END) == "2026-03-08T12:30:45.123Z"
    # naive values are taken as UTC
    assert format_ebay_datetime(datetime(2026, 3, 1)) == "2026-03-01T00:00:00.000Z"
    # other offsets are converted
    plus_two = timezone(timedelta(hours=2))
    assert format_ebay_datetime(datetime(2026, 3, 1, 2, 0, tzinfo=plus_two)) == (
        "2026-03-01T00:00:00.000Z"
    )


async def test_fetch_orders_single_page(ebay_client, fake_ebay, make_ebay_order) -> None:
    fake_ebay.orders["access-1"] = [make_ebay_order(f"A-{i}") for i in range(3)]

    feed = await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    (request,) = fake_ebay.requests
    assert request.headers["Authorization"] == "Bearer access-1"
    assert request.url.params["filter"] == (
        "creationdate:[2026-03-01T00:00:00.000Z..2026-03-08T12:30:45.123Z]"
    )
    assert request.url.params["limit"] == "50"
    assert request.url.params["offset"] == "0"
    assert [o.ebay_order_id for o in feed] == ["A-0", "A-1", "A-2"]
    assert len(feed) == 3
    assert not feed.truncated
    assert feed.rejected == []


async def test_fetch_orders_follows_pages(ebay_client, fake_ebay, make_ebay_order) -> None:
    fake_ebay.orders["access-1"] = [make_ebay_order(f"A-{i}") for i in range(120)]

    feed = await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    offsets = [r.url.params["offset"] for r in fake_ebay.requests]
    assert offsets == ["0", "50", "100"]
    assert len(feed) == 120
    assert not feed.truncated


async def test_fetch_orders_exactly_at_cap_is_not_truncated(
    ebay_client, fake_ebay, make_ebay_order
) -> None:
    fake_ebay.orders["access-1"] = [make_ebay_order(f"A-{i}") for i in range(MAX_ORDER_RECORDS)]

    feed = await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    assert len(fake_ebay.requests) == 20
    assert len(feed) == MAX_ORDER_RECORDS
    assert not feed.truncated


async def test_fetch_orders_stops_at_safety_cap(ebay_client, fake_ebay, make_ebay_order) -> None:
    fake_ebay.orders["access-1"] = [make_ebay_order(f"A-{i}") for i in range(1100)]

    feed = await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    assert len(fake_ebay.requests) == 20
    assert len(feed) == 1000
    assert feed.truncated
    assert feed.orders[-1].ebay_order_id == "A-999"


async def test_empty_last_page_with_next_is_not_truncated(
    ebay_client, fake_ebay, make_ebay_order
) -> None:
    fake_ebay.orders["access-1"] = [make_ebay_order(f"A-{i}") for i in range(3)]
    fake_ebay.always_next = True

    feed = await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    assert [r.url.params["offset"] for r in fake_ebay.requests] == ["0", "50"]
    assert len(feed) == 3
    assert not feed.truncated


async def test_fetch_orders_rejects_malformed_order_only(
    ebay_client, fake_ebay, make_ebay_order
) -> None:
    broken = make_ebay_order("BROKEN-1")
    del broken["creationDate"]
    fake_ebay.orders["access-1"] = [make_ebay_order("A-1"), broken, make_ebay_order("A-2")]

    feed = await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    assert [o.ebay_order_id for o in feed] == ["A-1", "A-2"]
    (rejected,) = feed.rejected
    assert rejected.order_id == "BROKEN-1"
    assert "creationDate" in rejected.reason


async def test_fetch_orders_error_raises(ebay_client, fake_ebay) -> None:
    fake_ebay.failing_tokens.add("access-1")

    with pytest.raises(EbayApiError) as exc_info:
        await ebay_client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    assert exc_info.value.status_code == 500
    assert exc_info.value.endpoint == "fulfillment:getOrders"


async def test_small_page_size_and_cap(fake_ebay, make_ebay_order) -> None:
    fake_ebay.orders["access-1"] = [make_ebay_order(f"A-{i}") for i in range(30)]
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_ebay.handler))
    client = EbayApiClient(
        fulfillment_url="https://api.sandbox.ebay.com/sell/fulfillment/v1",
        http_client=http_client,
        page_size=10,
        max_records=25,
    )

    async with client:
        feed = await client.fetch_orders("access-1", WINDOW_START, WINDOW_END)

    assert client.max_pages == 3
    assert len(fake_ebay.requests) == 3
    assert len(feed) == 25
    assert feed.truncated
    await http_client.aclose()
