"""Pydantic schemas for eBay API payloads and outward connection/order views."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_ACCESS_TOKEN_EXPIRES_IN = 7200  # 2 hours
DEFAULT_REFRESH_TOKEN_EXPIRES_IN = 47_304_000  # 18 months
DEFAULT_TOKEN_TYPE = "Bearer"


class EbayPayload(BaseModel):
    """Base for inbound eBay JSON: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# OAuth / Identity
# =============================================================================


class EbayTokenResponse(EbayPayload):
    """Token endpoint response (authorization_code and refresh_token grants)."""

    access_token: str = Field(min_length=1)
    refresh_token: str = ""  # empty when eBay did not rotate it
    expires_in: int = DEFAULT_ACCESS_TOKEN_EXPIRES_IN
    refresh_token_expires_in: int = DEFAULT_REFRESH_TOKEN_EXPIRES_IN
    token_type: str = DEFAULT_TOKEN_TYPE
    scope: str = ""


class EbayUserResponse(EbayPayload):
    """Identity API ``/user`` response."""

    user_id: str = Field(default="", alias="userId")
    username: str = ""


# =============================================================================
# Fulfillment API orders
# =============================================================================


class EbayAmount(EbayPayload):
    value: Decimal | None = None
    currency: str | None = None


class EbayBuyer(EbayPayload):
    username: str | None = None


class EbayCancelStatus(EbayPayload):
    cancel_state: str | None = Field(default=None, alias="cancelState")


class EbayPricingSummary(EbayPayload):
    total: EbayAmount | None = None
    delivery_cost: EbayAmount | None = Field(default=None, alias="deliveryCost")
    fee: EbayAmount | None = None
    payment_processing_fee: EbayAmount | None = Field(default=None, alias="paymentProcessingFee")
    additional_fees: EbayAmount | None = Field(default=None, alias="additionalFees")


class EbayLineItem(EbayPayload):
    line_item_id: str | None = Field(default=None, alias="lineItemId")
    legacy_item_id: str | None = Field(default=None, alias="legacyItemId")
    title: str | None = None
    sku: str | None = None
    quantity: int | None = None
    line_item_cost: EbayAmount | None = Field(default=None, alias="lineItemCost")


class EbayOrderPayload(EbayPayload):
    """One order from ``getOrders``. Only id and creation date are mandatory."""

    order_id: str = Field(alias="orderId", min_length=1)
    legacy_order_id: str | None = Field(default=None, alias="legacyOrderId")
    creation_date: datetime = Field(alias="creationDate")
    order_fulfillment_status: str | None = Field(default=None, alias="orderFulfillmentStatus")
    order_payment_status: str | None = Field(default=None, alias="orderPaymentStatus")
    cancel_status: EbayCancelStatus | None = Field(default=None, alias="cancelStatus")
    buyer: EbayBuyer | None = None
    pricing_summary: EbayPricingSummary | None = Field(default=None, alias="pricingSummary")
    line_items: list[EbayLineItem] = Field(default_factory=list, alias="lineItems")


class EbayOrdersPage(EbayPayload):
    """One page of ``getOrders``.

    Orders are kept raw so that one malformed order can be rejected on its
    own without failing the whole page.
    """

    orders: list[dict[str, Any]] = Field(default_factory=list)
    next: str | None = None
    total: int | None = None
    limit: int | None = None
    offset: int | None = None


# =============================================================================
# Outward views (never carry token material)
# =============================================================================


class ConnectionStatus(BaseModel):
    """eBay connection status as shown to the bookkeeping UI."""

    is_connected: bool = Field(description="Whether the eBay integration is active")
    ebay_username: str | None = Field(default=None, description="Connected eBay account")
    connected_at: datetime | None = Field(default=None, description="When the account was linked")
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    access_token_expires_at: datetime | None = None
    refresh_token_expires_at: datetime | None = None
    requires_reauthorization: bool = Field(
        default=False, description="Refresh token expired, user must reconnect"
    )
    scopes: str | None = None


class OrderSummary(BaseModel):
    """A reconciled order for list views."""

    id: int
    ebay_order_id: str
    order_date: datetime
    buyer_username: str
    item_title: str
    sku: str | None
    quantity: int
    status: str
    payment_status: str
    fulfillment_status: str
    currency: str
    gross_sale: Decimal
    shipping_paid: Decimal
    shipping_actual: Decimal
    total_fees: Decimal
    net_payout: Decimal
    profit: Decimal | None
    profit_margin: Decimal | None
    inventory_item_id: int | None
    notes: str | None
    last_synced_at: datetime


# =============================================================================
# Local order edits
# =============================================================================


class ShippingCostUpdate(BaseModel):
    """What the seller actually paid to ship an order."""

    amount: Decimal = Field(ge=0, description="Actual shipping cost")
    currency: str | None = Field(
        default=None,
        min_length=3,
        max_length=3,
        description="Must match the order currency; defaults to it",
    )


class NotesUpdate(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class InventoryLinkRequest(BaseModel):
    inventory_item_id: int = Field(gt=0)
