"""Local inventory item model.

Only the parts of a stock record that order sync touches live here:
SKU matching for auto-link, cost for profit, and the sold marker.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.orm import Mapped, composite, mapped_column

from seller_metrics_server.models.base import (
    Base,
    SoftDeleteMixin,
    TimestampMixin,
    UserScopedMixin,
)
from seller_metrics_server.models.money import DEFAULT_CURRENCY, Money


class InventoryStatus(str, Enum):
    """Stock status of an inventory item."""

    IN_STOCK = "in_stock"
    LISTED = "listed"
    SOLD = "sold"


class InventoryItem(Base, UserScopedMixin, TimestampMixin, SoftDeleteMixin):
    """A physical item the seller owns."""

    __tablename__ = "inventory_items"

    id: Mapped[int] = mapped_column(primary_key=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    internal_sku: Mapped[str | None] = mapped_column(String(50), index=True)
    ebay_sku: Mapped[str | None] = mapped_column(String(50), index=True)

    cost_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    cost_currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY)
    cost: Mapped[Money] = composite(Money, "cost_amount", "cost_currency")

    status: Mapped[str] = mapped_column(
        String(20), default=InventoryStatus.IN_STOCK.value, nullable=False, index=True
    )
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        """String representation."""
        sku = self.ebay_sku or self.internal_sku
        return f"<InventoryItem(id={self.id}, sku={sku}, status={self.status})>"

    @property
    def is_sold(self) -> bool:
        return self.status == InventoryStatus.SOLD.value

    @property
    def effective_sku(self) -> str | None:
        return self.ebay_sku or self.internal_sku

    def mark_as_sold(self, now: datetime | None = None) -> None:
        """Mark the item sold (no-op if already sold)."""
        if self.is_sold:
            return
        self.status = InventoryStatus.SOLD.value
        self.sold_at = now or datetime.now(UTC)
