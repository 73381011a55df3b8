"""Pydantic schemas for eBay payloads and API responses."""

from seller_metrics_server.schemas.ebay import (
    ConnectionStatus,
    EbayOrderPayload,
    EbayOrdersPage,
    EbayTokenResponse,
    EbayUserResponse,
    InventoryLinkRequest,
    NotesUpdate,
    OrderSummary,
    ShippingCostUpdate,
)

__all__ = [
    "ConnectionStatus",
    "EbayOrderPayload",
    "EbayOrdersPage",
    "EbayTokenResponse",
    "EbayUserResponse",
    "InventoryLinkRequest",
    "NotesUpdate",
    "OrderSummary",
    "ShippingCostUpdate",
]
