"""eBay order transformer.

Converts a validated Fulfillment API order payload into a normalized
``RemoteOrder`` that the reconciler can apply to the local ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TypeVar

from seller_metrics_server.models.money import DEFAULT_CURRENCY, Money
from seller_metrics_server.models.order import FulfillmentStatus, OrderStatus, PaymentStatus
from seller_metrics_server.schemas.ebay import EbayAmount, EbayOrderPayload

UNKNOWN_BUYER = "Unknown"
UNKNOWN_ITEM = "Unknown Item"

E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class RemoteOrder:
    """An order as reported by eBay, not yet reconciled.

    A ``None`` fee means eBay did not report it: "no change" on update,
    zero on create.
    """

    ebay_order_id: str
    order_date: datetime
    buyer_username: str
    item_title: str
    status: OrderStatus
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus
    gross_sale: Money
    shipping_paid: Money
    quantity: int = 1
    legacy_order_id: str | None = None
    ebay_item_id: str | None = None
    sku: str | None = None
    final_value_fee: Money | None = None
    payment_processing_fee: Money | None = None
    additional_fees: Money | None = None


def _parse_enum(enum_cls: type[E], raw: str | None, default: E) -> E:
    if not raw:
        return default
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        return default


def _money(amount: EbayAmount | None) -> Money:
    if amount is None:
        return Money.zero()
    return Money(
        amount.value if amount.value is not None else Decimal("0"),
        amount.currency or DEFAULT_CURRENCY,
    )


def _optional_money(amount: EbayAmount | None) -> Money | None:
    return _money(amount) if amount is not None else None


class OrderTransformer:
    """Transform eBay order payload -> RemoteOrder."""

    @staticmethod
    def order_status(payload: EbayOrderPayload, fulfillment: FulfillmentStatus) -> OrderStatus:
        """Derive the overall order status.

        eBay has no single order status field: a cancelled order carries
        ``cancelStatus.cancelState == "CANCELED"``, a shipped one is
        ``FULFILLED``, everything else is still active.
        """
        cancel_state = payload.cancel_status.cancel_state if payload.cancel_status else None
        if cancel_state and cancel_state.upper() == "CANCELED":
            return OrderStatus.CANCELLED
        if fulfillment is FulfillmentStatus.FULFILLED:
            return OrderStatus.COMPLETED
        return OrderStatus.ACTIVE

    @staticmethod
    def transform(payload: EbayOrderPayload) -> RemoteOrder:
        """Convert a validated order payload to a RemoteOrder.

        Most orders have a single line item; item details come from the first.
        """
        line_item = payload.line_items[0] if payload.line_items else None
        pricing = payload.pricing_summary

        fulfillment = _parse_enum(
            FulfillmentStatus, payload.order_fulfillment_status, FulfillmentStatus.NOT_STARTED
        )

        return RemoteOrder(
            ebay_order_id=payload.order_id,
            legacy_order_id=payload.legacy_order_id,
            order_date=payload.creation_date,
            buyer_username=(payload.buyer.username if payload.buyer else None) or UNKNOWN_BUYER,
            item_title=(line_item.title if line_item else None) or UNKNOWN_ITEM,
            ebay_item_id=line_item.legacy_item_id if line_item else None,
            sku=(line_item.sku if line_item else None) or None,
            quantity=(line_item.quantity if line_item else None) or 1,
            status=OrderTransformer.order_status(payload, fulfillment),
            payment_status=_parse_enum(
                PaymentStatus, payload.order_payment_status, PaymentStatus.PENDING
            ),
            fulfillment_status=fulfillment,
            gross_sale=_money(pricing.total if pricing else None),
            shipping_paid=_money(pricing.delivery_cost if pricing else None),
            final_value_fee=_optional_money(pricing.fee if pricing else None),
            payment_processing_fee=_optional_money(
                pricing.payment_processing_fee if pricing else None
            ),
            additional_fees=_optional_money(pricing.additional_fees if pricing else None),
        )
