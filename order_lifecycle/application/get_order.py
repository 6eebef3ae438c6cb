from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from order_lifecycle.domain.models import (
    Order, OrderItem, ProductImage, ColorSnapshot, Amount, Size, ShippingInfo, PaymentMethod, PaymentStatus
)
from order_lifecycle.domain.status import OrderStatus
from order_lifecycle.domain.exceptions import OrderNotFoundError, ReturnNotFoundError, ValidationError


class ProductGroup(BaseModel):
    """All batches of one (product, color, size) line, keyed by status"""
    product_id: str
    name: str
    image: ProductImage | None = None
    color: ColorSnapshot
    size: Size
    amount: Amount
    quantity: int = 0
    items_by_status: dict[OrderStatus, list[OrderItem]] = Field(default_factory=dict)


class ReturnRequestView(BaseModel):
    order_id: str
    user_id: str
    ordered_at: datetime
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    shipping_info: ShippingInfo
    item: OrderItem


class OrderView(BaseModel):
    order: Order
    overall_status: OrderStatus
    total_amount: Decimal
    total_items: int
    products: list[ProductGroup]


def group_products(order: Order) -> list[ProductGroup]:
    groups: dict[tuple, ProductGroup] = {}
    for item in order.items:
        key = (item.product.product_id, item.color.name, item.size)
        group = groups.get(key)
        if group is None:
            group = groups[key] = ProductGroup(
                product_id=item.product.product_id,
                name=item.product.name,
                image=item.product.image,
                color=item.color,
                size=item.size,
                amount=item.amount,
            )
        group.quantity += item.quantity
        group.items_by_status.setdefault(item.order_status, []).append(item)
    return list(groups.values())


def to_view(order: Order) -> OrderView:
    return OrderView(
        order=order,
        overall_status=order.overall_status,
        total_amount=order.total_amount,
        total_items=order.total_items,
        products=group_products(order),
    )


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, order_id: str, user_id: Optional[str] = None) -> OrderView:
        """Without a user id the ownership check is skipped (admin view)"""
        async with self._uow() as uow:
            order = await uow.orders.get_by_order_id(order_id)
            if not order or (user_id is not None and order.user_id != user_id):
                raise OrderNotFoundError(f"Order {order_id} not found")
            return to_view(order)


class ListOrdersUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, user_id: str) -> list[OrderView]:
        async with self._uow() as uow:
            orders = await uow.orders.list_by_user(user_id)
            return [to_view(order) for order in orders]


class GetReturnRequestUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, return_id: str) -> tuple[Order, OrderItem]:
        async with self._uow() as uow:
            order = await uow.orders.get_by_return_id(return_id)
            item = order.find_item_by_return_id(return_id) if order else None
            if not item:
                raise ReturnNotFoundError(f"Return request {return_id} not found")
            return order, item


RETURN_STATUSES = frozenset({
    OrderStatus.RETURN_REQUESTED,
    OrderStatus.DEPARTED_FOR_RETURNING,
    OrderStatus.RETURNED,
    OrderStatus.RETURN_CANCELLED,
    OrderStatus.REFUNDED,
})


class ListReturnRequestsUseCase:
    """Admin queue of batches that went through a return request, newest order first.

    Refunded batches show up only when they were refunded after a return.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, status: Optional[OrderStatus] = None) -> list[ReturnRequestView]:
        if status is not None and status not in RETURN_STATUSES:
            raise ValidationError(f"{status.value} is not a return status")

        async with self._uow() as uow:
            orders = await uow.orders.list_with_returns(status)

        return [
            ReturnRequestView(
                order_id=order.order_id,
                user_id=order.user_id,
                ordered_at=order.ordered_at,
                payment_method=order.payment_method,
                payment_status=order.payment_status,
                shipping_info=order.shipping_info,
                item=item,
            )
            for order in orders
            for item in order.items
            if item.return_id and (status is None or item.order_status == status)
        ]
