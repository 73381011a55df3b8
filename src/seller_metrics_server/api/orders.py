"""Reconciled order endpoints.

Listing plus the user-owned edits (actual shipping cost, notes, inventory
link, delete). Sync never touches the fields edited here.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime

import structlog
from litestar import Router, delete, get, patch, post
from litestar.exceptions import NotFoundException, PermissionDeniedException, ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK, HTTP_204_NO_CONTENT
from sqlalchemy.ext.asyncio import AsyncSession

from seller_metrics_server.api.ebay import validate_user_id
from seller_metrics_server.core.auth import api_key_guard
from seller_metrics_server.models.money import Money
from seller_metrics_server.models.order import EbayOrder, OrderStatus
from seller_metrics_server.schemas.ebay import (
    InventoryLinkRequest,
    NotesUpdate,
    OrderSummary,
    ShippingCostUpdate,
)
from seller_metrics_server.services.orders import (
    InventoryItemNotFoundError,
    OrderNotFoundError,
    OrderService,
)

logger = structlog.get_logger()


def order_summary(order: EbayOrder) -> OrderSummary:
    """Flatten an order and its derived amounts for the response."""
    profit = order.profit
    return OrderSummary(
        id=order.id,
        ebay_order_id=order.ebay_order_id,
        order_date=order.order_date,
        buyer_username=order.buyer_username,
        item_title=order.item_title,
        sku=order.sku,
        quantity=order.quantity,
        status=order.status,
        payment_status=order.payment_status,
        fulfillment_status=order.fulfillment_status,
        currency=order.gross_sale.currency,
        gross_sale=order.gross_sale.amount,
        shipping_paid=order.shipping_paid.amount,
        shipping_actual=order.shipping_actual.amount,
        total_fees=order.total_fees.amount,
        net_payout=order.net_payout.amount,
        profit=profit.amount if profit is not None else None,
        profit_margin=order.profit_margin,
        inventory_item_id=order.inventory_item_id,
        notes=order.notes,
        last_synced_at=order.last_synced_at,
    )


async def _edit(
    session: AsyncSession, action: Callable[[OrderService], Awaitable[EbayOrder]]
) -> OrderSummary:
    """Run an OrderService edit, map its errors to HTTP, commit."""
    try:
        order = await action(OrderService(session))
    except (OrderNotFoundError, InventoryItemNotFoundError) as e:
        raise NotFoundException(str(e)) from e
    except PermissionError as e:
        raise PermissionDeniedException(str(e)) from e
    except ValueError as e:
        raise ValidationException(str(e)) from e

    await session.commit()
    return order_summary(order)


@get("/users/{user_id:str}/ebay/orders", status_code=HTTP_200_OK)
async def list_orders(
    user_id: str,
    session: AsyncSession,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    status: OrderStatus | None = None,
    limit: int = Parameter(default=100, ge=1, le=500),
    offset: int = Parameter(default=0, ge=0),
) -> list[OrderSummary]:
    """List a user's reconciled eBay orders, newest first.

    Args:
        user_id: Bookkeeping user ID
        start_date: Only orders placed at or after this time
        end_date: Only orders placed at or before this time
        status: Filter by order status
        limit: Page size
        offset: Page offset

    Returns:
        Orders with derived fees, payout and (when linked) profit
    """
    validate_user_id(user_id)

    service = OrderService(session)
    orders = await service.store.list_for_user(
        user_id,
        start_date=start_date,
        end_date=end_date,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return [order_summary(order) for order in orders]


@patch("/users/{user_id:str}/ebay/orders/{order_id:int}/shipping", status_code=HTTP_200_OK)
async def update_shipping_cost(
    user_id: str, order_id: int, data: ShippingCostUpdate, session: AsyncSession
) -> OrderSummary:
    """Record the actual shipping cost of an order."""
    validate_user_id(user_id)
    amount = Money(data.amount, data.currency.upper()) if data.currency else data.amount
    return await _edit(
        session, lambda service: service.update_shipping_cost(user_id, order_id, amount)
    )


@patch("/users/{user_id:str}/ebay/orders/{order_id:int}/notes", status_code=HTTP_200_OK)
async def update_notes(
    user_id: str, order_id: int, data: NotesUpdate, session: AsyncSession
) -> OrderSummary:
    validate_user_id(user_id)
    return await _edit(session, lambda service: service.update_notes(user_id, order_id, data.notes))


@post("/users/{user_id:str}/ebay/orders/{order_id:int}/link", status_code=HTTP_200_OK)
async def link_inventory(
    user_id: str, order_id: int, data: InventoryLinkRequest, session: AsyncSession
) -> OrderSummary:
    """Link an order to the stock item it sold and mark the item sold."""
    validate_user_id(user_id)
    return await _edit(
        session,
        lambda service: service.link_to_inventory(user_id, order_id, data.inventory_item_id),
    )


@delete("/users/{user_id:str}/ebay/orders/{order_id:int}/link", status_code=HTTP_200_OK)
async def unlink_inventory(user_id: str, order_id: int, session: AsyncSession) -> OrderSummary:
    validate_user_id(user_id)
    return await _edit(
        session, lambda service: service.unlink_from_inventory(user_id, order_id)
    )


@delete("/users/{user_id:str}/ebay/orders/{order_id:int}", status_code=HTTP_204_NO_CONTENT)
async def delete_order(user_id: str, order_id: int, session: AsyncSession) -> None:
    """Remove an order from the ledger. Later syncs will not re-create it."""
    validate_user_id(user_id)

    service = OrderService(session)
    try:
        await service.soft_delete(user_id, order_id)
    except OrderNotFoundError as e:
        raise NotFoundException(str(e)) from e
    except PermissionError as e:
        raise PermissionDeniedException(str(e)) from e

    await session.commit()
    logger.info("Order removed via API", user_id=user_id, order_id=order_id)


orders_router = Router(
    path="/",
    guards=[api_key_guard],
    route_handlers=[
        list_orders,
        update_shipping_cost,
        update_notes,
        link_inventory,
        unlink_inventory,
        delete_order,
    ],
)
