"""eBay order sync (reconciliation) service."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from seller_metrics_server.core.config import settings
from seller_metrics_server.core.security import TokenEncryption
from seller_metrics_server.models.money import Money
from seller_metrics_server.models.order import EbayOrder
from seller_metrics_server.services.credentials import CredentialService, NotConnectedError
from seller_metrics_server.services.ebay_client import EbayApiClient
from seller_metrics_server.services.orders import OrderStore
from seller_metrics_server.transformers.order import RemoteOrder

logger = structlog.get_logger()

MAX_ERROR_SUMMARY = 500


@dataclass
class SyncResult:
    """Outcome of one reconciliation for one user."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    linked: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    def error_summary(self) -> str | None:
        """One-line summary of per-order errors, or None."""
        if not self.errors:
            return None
        summary = f"{len(self.errors)} order(s) failed to sync. First: {self.errors[0]}"
        return summary[:MAX_ERROR_SUMMARY]

    def truncation_notice(self) -> str | None:
        """Set when eBay had more orders in the window than one sync may fetch."""
        if not self.truncated:
            return None
        return (
            f"Only the first {self.fetched} orders in the sync window were fetched; "
            "older orders in the window were not synced."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "linked": self.linked,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "truncated": self.truncated,
            "success": self.success,
        }


class OrderSyncService:
    """Reconcile eBay orders into the local ledger for one user.

    Remote-owned order fields (statuses, fees) always take eBay's value;
    local-owned fields (actual shipping, notes, inventory link) are never
    touched except for auto-linking an unlinked order. Orders the user
    deleted are never recreated.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: EbayApiClient,
        encryption: TokenEncryption | None = None,
    ) -> None:
        """Initialize sync service.

        Args:
            session: Database session
            client: eBay API client
            encryption: Token codec, defaults to the process-wide instance
        """
        self.session = session
        self.client = client
        self.credentials = CredentialService(session, client, encryption)
        self.orders = OrderStore(session)
        self.logger = logger.bind(service="order_sync")

    async def sync_user(
        self,
        user_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        now: datetime | None = None,
    ) -> SyncResult:
        """Fetch a user's eBay orders for a window and reconcile them.

        A failure to obtain a token or fetch orders propagates and no order
        for this user is written. A failure on one order is recorded in
        ``SyncResult.errors`` and the remaining orders are still processed.

        Args:
            user_id: Bookkeeping user ID
            start_date: Window start (default: ``sync_days_lookback`` days back)
            end_date: Window end (default: now)
            now: Current time (defaults to now)

        Returns:
            Counts of fetched/created/updated/linked/skipped orders and errors

        Raises:
            NotConnectedError: If the user has no connected eBay account
            ReauthorizationRequiredError: If the refresh token has expired
            EbayApiError: If eBay rejects the token refresh or order fetch
        """
        now = now or datetime.now(UTC)

        credential = await self.credentials.store.get_by_user_id(user_id)
        if credential is None or not credential.is_connected:
            raise NotConnectedError(user_id)

        end_date = end_date or now
        start_date = start_date or end_date - timedelta(days=settings.sync_days_lookback)

        self.logger.info(
            "Starting order sync",
            user_id=user_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

        try:
            access_token = await self.credentials.get_valid_access_token(credential, now=now)
        finally:
            # Keep a refreshed token or a forced disconnect even if what follows fails
            await self.session.commit()

        feed = await self.client.fetch_orders(access_token, start_date, end_date)

        result = SyncResult(fetched=len(feed) + len(feed.rejected), truncated=feed.truncated)
        for rejected in feed.rejected:
            result.errors.append(
                f"Error processing order {rejected.order_id or '<unknown>'}: {rejected.reason}"
            )

        for remote in feed:
            try:
                async with self.session.begin_nested():
                    action, linked = await self._reconcile(user_id, remote, now)
            except Exception as e:
                result.errors.append(f"Error processing order {remote.ebay_order_id}: {e}")
                self.logger.warning(
                    "Order sync failed",
                    user_id=user_id,
                    ebay_order_id=remote.ebay_order_id,
                    error=str(e),
                )
                continue
            # Counted only once the savepoint has been released
            setattr(result, action, getattr(result, action) + 1)
            result.linked += int(linked)

        credential.record_successful_sync(now)
        problems = [
            message
            for message in (result.error_summary(), result.truncation_notice())
            if message
        ]
        if problems:
            credential.record_sync_error(" ".join(problems)[:MAX_ERROR_SUMMARY])
        await self.session.commit()

        self.logger.info("Order sync complete", user_id=user_id, **result.to_dict())
        return result

    async def _reconcile(
        self, user_id: str, remote: RemoteOrder, now: datetime
    ) -> tuple[str, bool]:
        """Apply one remote order; returns the counter to bump and whether it linked."""
        if await self.orders.was_deleted(user_id, remote.ebay_order_id):
            return "skipped", False

        order = await self.orders.get_by_ebay_order_id(user_id, remote.ebay_order_id)
        if order is None:
            order = self._create_order(user_id, remote, now)
            self.orders.add(order)
            action = "created"
        else:
            order.update_from_sync(
                status=remote.status,
                payment_status=remote.payment_status,
                fulfillment_status=remote.fulfillment_status,
                final_value_fee=remote.final_value_fee,
                payment_processing_fee=remote.payment_processing_fee,
                additional_fees=remote.additional_fees,
                now=now,
            )
            action = "updated"

        linked = False
        if order.inventory_item_id is None and remote.sku:
            linked = await self._auto_link(user_id, order, remote.sku, now)

        await self.session.flush()
        return action, linked

    @staticmethod
    def _create_order(user_id: str, remote: RemoteOrder, now: datetime) -> EbayOrder:
        currency = remote.gross_sale.currency
        return EbayOrder(
            user_id=user_id,
            ebay_order_id=remote.ebay_order_id,
            legacy_order_id=remote.legacy_order_id,
            order_date=remote.order_date,
            buyer_username=remote.buyer_username,
            item_title=remote.item_title,
            ebay_item_id=remote.ebay_item_id,
            sku=remote.sku,
            quantity=remote.quantity,
            status=remote.status.value,
            payment_status=remote.payment_status.value,
            fulfillment_status=remote.fulfillment_status.value,
            gross_sale=remote.gross_sale,
            shipping_paid=remote.shipping_paid,
            shipping_actual=Money.zero(currency),
            final_value_fee=remote.final_value_fee or Money.zero(currency),
            payment_processing_fee=remote.payment_processing_fee or Money.zero(currency),
            additional_fees=remote.additional_fees or Money.zero(currency),
            notes=None,
            inventory_item_id=None,
            last_synced_at=now,
        )

    async def _auto_link(self, user_id: str, order: EbayOrder, sku: str, now: datetime) -> bool:
        """Link to the one unsold item with this SKU costed in the order's currency."""
        matches = await self.orders.find_unsold_inventory_by_sku(
            user_id, sku, currency=order.currency
        )
        if len(matches) != 1:
            if matches:
                self.logger.info(
                    "Ambiguous SKU, not auto-linking",
                    user_id=user_id,
                    ebay_order_id=order.ebay_order_id,
                    sku=sku,
                    candidates=len(matches),
                )
            return False

        item = matches[0]
        order.link_to_inventory(item)
        item.mark_as_sold(now)
        return True
