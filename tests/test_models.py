"""Tests for money, order amounts, inventory and credential model behavior."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet

from seller_metrics_server.core.security import TokenDecryptionError, TokenEncryption
from seller_metrics_server.models import (
    EbayCredential,
    EbayOrder,
    FulfillmentStatus,
    InventoryItem,
    InventoryStatus,
    Money,
    OrderStatus,
    PaymentStatus,
)


def make_order(**overrides) -> EbayOrder:
    fields = {
        "user_id": "user-1",
        "ebay_order_id": "12-34567-89012",
        "order_date": datetime(2026, 3, 1, tzinfo=UTC),
        "buyer_username": "buyer_one",
        "item_title": "Vintage Camera",
        "quantity": 1,
        "status": "active",
        "payment_status": "paid",
        "fulfillment_status": "not_started",
        "gross_sale": Money.of("100.00"),
        "shipping_paid": Money.of("10.00"),
        "shipping_actual": Money.of("8.00"),
        "final_value_fee": Money.of("13.00"),
        "payment_processing_fee": Money.of("3.00"),
        "additional_fees": Money.of("1.00"),
    }
    fields.update(overrides)
    return EbayOrder(**fields)


# =============================================================================
# Money
# =============================================================================


def test_money_arithmetic_keeps_currency() -> None:
    total = Money.of("10.50") + Money.of("2.25") - Money.of("0.75")

    assert total == Money(Decimal("12.00"), "USD")
    assert str(total) == "12.00 USD"


def test_money_of_float_goes_through_str() -> None:
    assert Money.of(0.1).amount == Decimal("0.1")


def test_money_currency_mismatch_raises() -> None:
    with pytest.raises(ValueError, match="Currency mismatch"):
        Money.of("1.00", "USD") + Money.of("1.00", "GBP")


def test_money_zero() -> None:
    assert Money.zero("EUR").is_zero
    assert Money.zero("EUR").currency == "EUR"


# =============================================================================
# EbayOrder derived amounts
# =============================================================================


def test_order_fee_and_payout_amounts() -> None:
    order = make_order()

    assert order.total_fees == Money.of("17.00")
    assert order.net_payout == Money.of("93.00")


def test_order_profit_requires_linked_inventory() -> None:
    order = make_order()

    assert order.profit is None
    assert order.profit_margin is None


def test_order_profit_with_linked_inventory() -> None:
    item = InventoryItem(user_id="user-1", title="Vintage Camera", cost=Money.of("40.00"))
    order = make_order(inventory_item=item)

    # 93.00 payout - 40.00 cost - 8.00 actual shipping
    assert order.profit == Money.of("45.00")
    assert order.profit_margin == Decimal("45")


def test_order_profit_margin_none_for_zero_gross() -> None:
    item = InventoryItem(user_id="user-1", title="Freebie", cost=Money.zero())
    order = make_order(
        gross_sale=Money.zero(),
        shipping_paid=Money.zero(),
        shipping_actual=Money.zero(),
        final_value_fee=Money.zero(),
        payment_processing_fee=Money.zero(),
        additional_fees=Money.zero(),
        inventory_item=item,
    )

    assert order.profit == Money.zero()
    assert order.profit_margin is None


def test_update_from_sync_none_fee_means_no_change() -> None:
    order = make_order()
    now = datetime(2026, 3, 2, tzinfo=UTC)

    order.update_from_sync(
        status=OrderStatus.COMPLETED,
        payment_status=PaymentStatus.PAID,
        fulfillment_status=FulfillmentStatus.FULFILLED,
        final_value_fee=Money.of("14.00"),
        now=now,
    )

    assert order.status == "completed"
    assert order.fulfillment_status == "fulfilled"
    assert order.final_value_fee == Money.of("14.00")
    assert order.payment_processing_fee == Money.of("3.00")
    assert order.additional_fees == Money.of("1.00")
    assert order.last_synced_at == now


# =============================================================================
# InventoryItem
# =============================================================================


def test_mark_as_sold_is_idempotent() -> None:
    item = InventoryItem(user_id="user-1", title="Lens", status=InventoryStatus.IN_STOCK.value)
    first = datetime(2026, 3, 1, tzinfo=UTC)

    item.mark_as_sold(first)
    item.mark_as_sold(first + timedelta(days=1))

    assert item.is_sold
    assert item.sold_at == first


def test_effective_sku_prefers_ebay_sku() -> None:
    assert InventoryItem(ebay_sku="EB-1", internal_sku="IN-1").effective_sku == "EB-1"
    assert InventoryItem(internal_sku="IN-1").effective_sku == "IN-1"


# =============================================================================
# EbayCredential
# =============================================================================


def _connected_credential() -> EbayCredential:
    now = datetime.now(UTC)
    credential = EbayCredential(user_id="user-1")
    credential.connect(
        access_token_encrypted="enc-access",
        access_token_expires_at=now + timedelta(hours=2),
        refresh_token_encrypted="enc-refresh",
        refresh_token_expires_at=now + timedelta(days=500),
        ebay_user_id="ebay-uid",
        ebay_username="seller",
        scopes="scope",
    )
    return credential


def test_connect_requires_both_tokens() -> None:
    credential = EbayCredential(user_id="user-1")

    with pytest.raises(ValueError):
        credential.connect(
            access_token_encrypted="enc-access",
            access_token_expires_at=datetime.now(UTC),
            refresh_token_encrypted="",
            refresh_token_expires_at=datetime.now(UTC),
            ebay_user_id=None,
            ebay_username=None,
            scopes=None,
        )
    assert not credential.is_connected


def test_apply_refresh_keeps_refresh_token_when_not_rotated() -> None:
    credential = _connected_credential()
    refresh_expiry = credential.refresh_token_expires_at
    credential.record_sync_error("boom")

    credential.apply_refresh(
        access_token_encrypted="enc-access-2",
        access_token_expires_at=datetime.now(UTC) + timedelta(hours=2),
    )

    assert credential.access_token_encrypted == "enc-access-2"
    assert credential.refresh_token_encrypted == "enc-refresh"
    assert credential.refresh_token_expires_at == refresh_expiry
    assert credential.last_sync_error is None


def test_require_reauthorization_disconnects_with_message() -> None:
    credential = _connected_credential()

    credential.require_reauthorization()

    assert not credential.is_connected
    assert "reconnect" in credential.last_sync_error


def test_disconnect_drops_tokens_and_error() -> None:
    credential = _connected_credential()
    credential.record_sync_error("boom")

    credential.disconnect()

    assert not credential.is_connected
    assert credential.access_token_encrypted == ""
    assert credential.refresh_token_encrypted == ""
    assert credential.last_sync_error is None


def test_credential_repr_has_no_token_material() -> None:
    assert "enc-" not in repr(_connected_credential())


# =============================================================================
# Token encryption
# =============================================================================


def test_token_encryption_round_trip() -> None:
    codec = TokenEncryption(Fernet.generate_key())

    ciphertext = codec.encrypt("v^1.1#i^1#p^3#r^1")

    assert ciphertext != "v^1.1#i^1#p^3#r^1"
    assert codec.decrypt(ciphertext) == "v^1.1#i^1#p^3#r^1"


def test_token_encryption_rejects_empty_values() -> None:
    codec = TokenEncryption(Fernet.generate_key())

    with pytest.raises(ValueError):
        codec.encrypt("")
    with pytest.raises(ValueError):
        codec.decrypt("")


def test_token_decryption_with_wrong_key_fails() -> None:
    ciphertext = TokenEncryption(Fernet.generate_key()).encrypt("secret")

    with pytest.raises(TokenDecryptionError):
        TokenEncryption(Fernet.generate_key()).decrypt(ciphertext)
