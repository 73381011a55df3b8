"""Order store and user-owned order edits.

Sync only ever writes remote-owned order fields (see ``services.sync``).
Everything here is an explicit user action on local-owned fields, checked
against the owning user.
"""

from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from seller_metrics_server.models.inventory import InventoryItem, InventoryStatus
from seller_metrics_server.models.money import Money
from seller_metrics_server.models.order import EbayOrder

logger = structlog.get_logger()


class OrderNotFoundError(LookupError):
    """Order does not exist (or was deleted)."""

    def __init__(self, order_id: int) -> None:
        self.order_id = order_id
        super().__init__(f"eBay order {order_id} not found")


class InventoryItemNotFoundError(LookupError):
    """Inventory item does not exist (or was deleted)."""

    def __init__(self, item_id: int) -> None:
        self.item_id = item_id
        super().__init__(f"Inventory item {item_id} not found")


class OrderStore:
    """Queries over ``ebay_orders`` and the inventory lookups sync needs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_ebay_order_id(
        self, user_id: str, ebay_order_id: str, include_deleted: bool = False
    ) -> EbayOrder | None:
        stmt = select(EbayOrder).where(
            EbayOrder.user_id == user_id,
            EbayOrder.ebay_order_id == ebay_order_id,
        )
        if not include_deleted:
            stmt = stmt.where(EbayOrder.is_deleted.is_(False))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def exists(self, user_id: str, ebay_order_id: str) -> bool:
        return await self.get_by_ebay_order_id(user_id, ebay_order_id) is not None

    async def was_deleted(self, user_id: str, ebay_order_id: str) -> bool:
        """True if the user soft-deleted this eBay order before."""
        stmt = select(func.count(EbayOrder.id)).where(
            EbayOrder.user_id == user_id,
            EbayOrder.ebay_order_id == ebay_order_id,
            EbayOrder.is_deleted.is_(True),
        )
        result = await self.session.execute(stmt)
        return (result.scalar() or 0) > 0

    async def get_by_id(self, order_id: int) -> EbayOrder | None:
        stmt = select(EbayOrder).where(EbayOrder.id == order_id, EbayOrder.is_deleted.is_(False))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EbayOrder]:
        """Live orders for a user, newest first."""
        stmt = select(EbayOrder).where(
            EbayOrder.user_id == user_id,
            EbayOrder.is_deleted.is_(False),
        )
        if start_date is not None:
            stmt = stmt.where(EbayOrder.order_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(EbayOrder.order_date <= end_date)
        if status is not None:
            stmt = stmt.where(EbayOrder.status == status)
        stmt = stmt.order_by(EbayOrder.order_date.desc(), EbayOrder.id.desc())
        stmt = stmt.limit(limit).offset(offset)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def add(self, order: EbayOrder) -> None:
        self.session.add(order)

    async def find_unsold_inventory_by_sku(
        self, user_id: str, sku: str, currency: str | None = None
    ) -> list[InventoryItem]:
        """Unsold, live stock of ``user_id`` whose eBay or internal SKU equals ``sku``.

        With ``currency``, only items costed in that currency are returned.
        """
        stmt = select(InventoryItem).where(
            InventoryItem.user_id == user_id,
            InventoryItem.is_deleted.is_(False),
            InventoryItem.status != InventoryStatus.SOLD.value,
            or_(InventoryItem.ebay_sku == sku, InventoryItem.internal_sku == sku),
        )
        if currency is not None:
            stmt = stmt.where(InventoryItem.cost_currency == currency)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_inventory_item(self, item_id: int) -> InventoryItem | None:
        stmt = select(InventoryItem).where(
            InventoryItem.id == item_id, InventoryItem.is_deleted.is_(False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class OrderService:
    """User actions on local-owned order fields.

    Changes are flushed, never committed; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.store = OrderStore(session)
        self.logger = logger.bind(service="orders")

    async def _get_owned(self, user_id: str, order_id: int) -> EbayOrder:
        order = await self.store.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.user_id != user_id:
            raise PermissionError("Order belongs to another user")
        return order

    async def update_shipping_cost(
        self, user_id: str, order_id: int, shipping_actual: Money | Decimal
    ) -> EbayOrder:
        """Record what the seller actually paid for shipping.

        A bare amount is taken to be in the order's currency.

        Raises:
            OrderNotFoundError: If the order doesn't exist
            PermissionError: If the order belongs to another user
            ValueError: If the amount is negative or in another currency
        """
        order = await self._get_owned(user_id, order_id)
        if not isinstance(shipping_actual, Money):
            shipping_actual = Money(shipping_actual, order.currency)
        if shipping_actual.amount < 0:
            raise ValueError("Shipping cost cannot be negative")

        order.update_shipping_cost(shipping_actual)
        await self.session.flush()
        return order

    async def update_notes(self, user_id: str, order_id: int, notes: str | None) -> EbayOrder:
        order = await self._get_owned(user_id, order_id)
        order.update_notes(notes)
        await self.session.flush()
        return order

    async def link_to_inventory(
        self, user_id: str, order_id: int, item_id: int, now: datetime | None = None
    ) -> EbayOrder:
        """Link an order to a stock item and mark the item sold.

        Raises:
            OrderNotFoundError: If the order doesn't exist
            InventoryItemNotFoundError: If the item doesn't exist
            PermissionError: If either belongs to another user
            ValueError: If the item cost is in another currency than the order
        """
        order = await self._get_owned(user_id, order_id)
        item = await self.store.get_inventory_item(item_id)
        if item is None:
            raise InventoryItemNotFoundError(item_id)
        if item.user_id != user_id:
            raise PermissionError("Inventory item belongs to another user")

        order.link_to_inventory(item)
        item.mark_as_sold(now or datetime.now(UTC))
        await self.session.flush()

        self.logger.info("Order linked to inventory", order_id=order_id, item_id=item_id)
        return order

    async def unlink_from_inventory(self, user_id: str, order_id: int) -> EbayOrder:
        order = await self._get_owned(user_id, order_id)
        order.unlink_from_inventory()
        await self.session.flush()
        return order

    async def soft_delete(self, user_id: str, order_id: int, now: datetime | None = None) -> None:
        """Remove an order from the ledger. Later syncs will not bring it back."""
        order = await self._get_owned(user_id, order_id)
        order.soft_delete(now)
        await self.session.flush()
        self.logger.info("Order deleted", order_id=order_id, ebay_order_id=order.ebay_order_id)
