"""Database models."""

from seller_metrics_server.models.base import Base
from seller_metrics_server.models.credential import REAUTH_REQUIRED_MESSAGE, EbayCredential
from seller_metrics_server.models.inventory import InventoryItem, InventoryStatus
from seller_metrics_server.models.money import Money
from seller_metrics_server.models.order import (
    EbayOrder,
    FulfillmentStatus,
    OrderStatus,
    PaymentStatus,
)
from seller_metrics_server.models.sync_log import (
    SyncErrorType,
    SyncLog,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)

__all__ = [
    "Base",
    "EbayCredential",
    "EbayOrder",
    "FulfillmentStatus",
    "InventoryItem",
    "InventoryStatus",
    "Money",
    "OrderStatus",
    "PaymentStatus",
    "REAUTH_REQUIRED_MESSAGE",
    "SyncErrorType",
    "SyncLog",
    "SyncOperation",
    "SyncStatus",
    "SyncTrigger",
]
