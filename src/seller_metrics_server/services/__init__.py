"""Application services."""

from seller_metrics_server.services.credentials import (
    CredentialService,
    CredentialState,
    CredentialStore,
    NotConnectedError,
    ReauthorizationRequiredError,
    classify,
)
from seller_metrics_server.services.ebay_client import EbayApiClient, EbayApiError, OrderFeed
from seller_metrics_server.services.orders import OrderNotFoundError, OrderService, OrderStore
from seller_metrics_server.services.sync import OrderSyncService, SyncResult
from seller_metrics_server.services.sync_orchestrator import SyncOrchestrator

__all__ = [
    "CredentialService",
    "CredentialState",
    "CredentialStore",
    "EbayApiClient",
    "EbayApiError",
    "NotConnectedError",
    "OrderFeed",
    "OrderNotFoundError",
    "OrderService",
    "OrderStore",
    "OrderSyncService",
    "ReauthorizationRequiredError",
    "SyncOrchestrator",
    "SyncResult",
    "classify",
]
