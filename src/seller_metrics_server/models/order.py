"""eBay order model."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, composite, mapped_column, relationship

from seller_metrics_server.models.base import (
    Base,
    SoftDeleteMixin,
    TimestampMixin,
    UserScopedMixin,
)
from seller_metrics_server.models.inventory import InventoryItem
from seller_metrics_server.models.money import DEFAULT_CURRENCY, Money


class OrderStatus(str, Enum):
    """Order status as reported by eBay."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


class PaymentStatus(str, Enum):
    """Payment status as reported by eBay."""

    PENDING = "pending"
    FAILED = "failed"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    FULLY_REFUNDED = "fully_refunded"


class FulfillmentStatus(str, Enum):
    """Fulfillment status as reported by eBay."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    FULFILLED = "fulfilled"


def _money_columns(name: str) -> tuple[Mapped[Decimal], Mapped[str]]:
    return (
        mapped_column(f"{name}_amount", Numeric(18, 2), default=Decimal("0"), nullable=False),
        mapped_column(f"{name}_currency", String(3), default=DEFAULT_CURRENCY, nullable=False),
    )


class EbayOrder(Base, UserScopedMixin, TimestampMixin, SoftDeleteMixin):
    """An eBay sale reconciled into the local ledger.

    Field ownership:
        remote-owned: statuses, fees, sale amounts, buyer/item details.
            Written only by order sync.
        local-owned: ``shipping_actual``, ``notes``, ``inventory_item_id``.
            Written only by explicit user action.

    ``(user_id, ebay_order_id)`` is unique across live and soft-deleted
    rows, so a deleted order keeps blocking re-creation.
    """

    __tablename__ = "ebay_orders"

    id: Mapped[int] = mapped_column(primary_key=True)

    # Remote identity
    ebay_order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    legacy_order_id: Mapped[str | None] = mapped_column(String(100))

    # Remote attributes
    order_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    buyer_username: Mapped[str] = mapped_column(String(100), nullable=False)
    item_title: Mapped[str] = mapped_column(String(200), nullable=False)
    ebay_item_id: Mapped[str | None] = mapped_column(String(50))
    sku: Mapped[str | None] = mapped_column(String(50))
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=OrderStatus.ACTIVE.value, nullable=False
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PENDING.value, nullable=False
    )
    fulfillment_status: Mapped[str] = mapped_column(
        String(20), default=FulfillmentStatus.NOT_STARTED.value, nullable=False
    )

    # Money (amount + currency column pairs)
    gross_sale_amount, gross_sale_currency = _money_columns("gross_sale")
    shipping_paid_amount, shipping_paid_currency = _money_columns("shipping_paid")
    shipping_actual_amount, shipping_actual_currency = _money_columns("shipping_actual")
    final_value_fee_amount, final_value_fee_currency = _money_columns("final_value_fee")
    payment_processing_fee_amount, payment_processing_fee_currency = _money_columns(
        "payment_processing_fee"
    )
    additional_fees_amount, additional_fees_currency = _money_columns("additional_fees")

    gross_sale: Mapped[Money] = composite(Money, "gross_sale_amount", "gross_sale_currency")
    shipping_paid: Mapped[Money] = composite(
        Money, "shipping_paid_amount", "shipping_paid_currency"
    )
    shipping_actual: Mapped[Money] = composite(
        Money, "shipping_actual_amount", "shipping_actual_currency"
    )
    final_value_fee: Mapped[Money] = composite(
        Money, "final_value_fee_amount", "final_value_fee_currency"
    )
    payment_processing_fee: Mapped[Money] = composite(
        Money, "payment_processing_fee_amount", "payment_processing_fee_currency"
    )
    additional_fees: Mapped[Money] = composite(
        Money, "additional_fees_amount", "additional_fees_currency"
    )

    # Local-owned
    notes: Mapped[str | None] = mapped_column(Text)
    inventory_item_id: Mapped[int | None] = mapped_column(
        ForeignKey("inventory_items.id", ondelete="SET NULL"), index=True
    )
    inventory_item: Mapped[InventoryItem | None] = relationship(lazy="selectin")

    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "ebay_order_id", name="uq_ebay_orders_user_order"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<EbayOrder(ebay_order_id={self.ebay_order_id}, user_id={self.user_id}, "
            f"status={self.status})>"
        )

    @property
    def currency(self) -> str:
        """Currency eBay settled the sale in; every amount on the order uses it."""
        return self.gross_sale.currency

    def _require_currency(self, amount: Money, what: str) -> None:
        if amount.currency != self.currency:
            raise ValueError(
                f"{what} is in {amount.currency} but order {self.ebay_order_id} "
                f"is in {self.currency}"
            )

    @property
    def total_fees(self) -> Money:
        """Final value + payment processing + additional fees."""
        return self.final_value_fee + self.payment_processing_fee + self.additional_fees

    @property
    def net_payout(self) -> Money:
        """What eBay deposits: gross sale + shipping paid - total fees."""
        return self.gross_sale + self.shipping_paid - self.total_fees

    @property
    def profit(self) -> Money | None:
        """Net payout - item cost - actual shipping, only when linked."""
        if self.inventory_item is None:
            return None
        return self.net_payout - self.inventory_item.cost - self.shipping_actual

    @property
    def profit_margin(self) -> Decimal | None:
        """Profit as a percentage of gross sale."""
        profit = self.profit
        if profit is None or self.gross_sale.is_zero:
            return None
        return profit.amount / self.gross_sale.amount * 100

    # Remote-owned writes (order sync only)

    def update_from_sync(
        self,
        *,
        status: OrderStatus,
        payment_status: PaymentStatus,
        fulfillment_status: FulfillmentStatus,
        final_value_fee: Money | None = None,
        payment_processing_fee: Money | None = None,
        additional_fees: Money | None = None,
        now: datetime | None = None,
    ) -> None:
        """Overwrite remote-owned fields. A ``None`` fee means "no change"."""
        self.status = status.value
        self.payment_status = payment_status.value
        self.fulfillment_status = fulfillment_status.value

        if final_value_fee is not None:
            self.final_value_fee = final_value_fee
        if payment_processing_fee is not None:
            self.payment_processing_fee = payment_processing_fee
        if additional_fees is not None:
            self.additional_fees = additional_fees

        self.last_synced_at = now or datetime.now(UTC)

    # Local-owned writes (user action only)

    def update_shipping_cost(self, shipping_actual: Money) -> None:
        self._require_currency(shipping_actual, "Shipping cost")
        self.shipping_actual = shipping_actual

    def update_notes(self, notes: str | None) -> None:
        self.notes = notes

    def link_to_inventory(self, item: InventoryItem) -> None:
        self._require_currency(item.cost, "Item cost")
        self.inventory_item = item
        self.inventory_item_id = item.id

    def unlink_from_inventory(self) -> None:
        self.inventory_item = None
        self.inventory_item_id = None
