import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel

from order_lifecycle.domain.models import (
    Order, OrderItem, PaymentMethod, RefundAccountDetails, RefundStatus, money
)
from order_lifecycle.domain.status import OrderStatus, ensure_transition
from order_lifecycle.domain.exceptions import (
    InvalidQuantityError, OrderNotFoundError, RefundRequestConflictError, ValidationError
)
from order_lifecycle.application.transition_item import ItemTransitionService

logger = logging.getLogger(__name__)

REQUEST_FIELDS = (
    "refund_status", "refund_amount", "refund_requested_at", "refund_requested_quantity",
    "refund_request_note", "refund_account_details",
)

DEFAULT_REFUND_NOTES = {
    OrderStatus.CANCELLED: "User requested refund for cancelled item",
    OrderStatus.RETURNED: "User requested refund for returned item",
}


class RefundRequestView(BaseModel):
    order_id: str
    user_id: str
    ordered_at: datetime
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    item: OrderItem

    @classmethod
    def of(cls, order: Order, item: OrderItem) -> "RefundRequestView":
        return cls(
            order_id=order.order_id,
            user_id=order.user_id,
            ordered_at=order.ordered_at,
            payment_method=order.payment_method,
            transaction_id=order.transaction_id,
            item=item,
        )


async def _load_order(uow, order_id: str, user_id: Optional[str] = None) -> Order:
    order = await uow.orders.get_by_order_id(order_id, for_update=True)
    if not order or (user_id is not None and order.user_id != user_id):
        raise OrderNotFoundError(f"Order {order_id} not found")
    return order


class RequestRefundUseCase:
    """User asks for a refund of a cancelled or returned batch; an admin decides."""

    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(
        self,
        user_id: str,
        order_id: str,
        item_id: str,
        quantity: int,
        account_details: RefundAccountDetails,
        note: Optional[str] = None,
    ) -> OrderItem:
        account_details.ensure_usable()

        async with self._uow() as uow:
            order = await _load_order(uow, order_id, user_id)
            item = order.get_item(item_id)

            ensure_transition(item.order_status, OrderStatus.REFUNDED)
            if item.refund_status == RefundStatus.REFUNDED:
                raise RefundRequestConflictError("Refund already processed for this item")
            if item.refund_status == RefundStatus.PENDING:
                raise RefundRequestConflictError("Refund already requested for this item")
            if quantity < 1:
                raise ValidationError("Quantity must be a positive integer")
            if quantity > item.quantity:
                raise InvalidQuantityError(quantity, item.quantity)

            now = self._transitions.clock()
            item.refund_status = RefundStatus.PENDING
            item.refund_amount = item.amount.total_amount * quantity
            item.refund_requested_at = now
            item.refund_requested_quantity = quantity
            item.refund_request_note = note or DEFAULT_REFUND_NOTES[item.order_status]
            item.refund_account_details = account_details
            item.refund_rejected_at = None
            item.refund_rejection_reason = None
            order.updated_at = now

            await uow.orders.save(order)
            await uow.outbox.create(
                event_type="order_item.refund_requested",
                event_data={
                    "order_id": order.order_id,
                    "user_id": order.user_id,
                    "item_id": item.item_id,
                    "quantity": quantity,
                    "refund_amount": str(item.refund_amount),
                },
                order_id=order.order_id,
            )
            await uow.commit()

        logger.info(f"Refund of {item.refund_amount} requested for {quantity} unit(s) of {item_id}")
        return item


class ApproveRefundUseCase:
    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(self, order_id: str, item_id: str, refund_amount: Optional[Decimal] = None) -> OrderItem:
        if refund_amount is not None and refund_amount <= 0:
            raise ValidationError("Invalid refund amount")

        async with self._uow() as uow:
            order = await _load_order(uow, order_id)
            item = order.get_item(item_id)
            if not item.has_pending_refund_request():
                raise RefundRequestConflictError("Refund request not found or already processed")

            quantity = min(item.refund_requested_quantity or item.quantity, item.quantity)
            amount = money(refund_amount) if refund_amount is not None else item.refund_amount
            moved = await self._transitions.apply(
                uow, order, item_id, OrderStatus.REFUNDED, quantity,
                note=f"Refund approved by admin - Amount: {amount}",
                changes={"refund_amount": amount, "refund_approved_at": self._transitions.clock()},
                approving_refund=True,
            )
            if moved is not item:
                # remainder batch keeps no trace of the request that was just served
                for field in REQUEST_FIELDS:
                    setattr(item, field, None)
                await uow.orders.save(order)
            await uow.commit()

        logger.info(f"Refund approved for {item_id}: {amount}")
        return moved


class RejectRefundUseCase:
    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(self, order_id: str, item_id: str, reason: str) -> OrderItem:
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        async with self._uow() as uow:
            order = await _load_order(uow, order_id)
            item = order.get_item(item_id)
            if not item.has_pending_refund_request():
                raise RefundRequestConflictError("Refund request not found or already processed")

            now = self._transitions.clock()
            item.refund_status = RefundStatus.REJECTED
            item.refund_rejected_at = now
            item.refund_rejection_reason = reason.strip()
            order.updated_at = now

            await uow.orders.save(order)
            await uow.outbox.create(
                event_type="order_item.refund_rejected",
                event_data={
                    "order_id": order.order_id,
                    "user_id": order.user_id,
                    "item_id": item.item_id,
                    "reason": item.refund_rejection_reason,
                },
                order_id=order.order_id,
            )
            await uow.commit()

        logger.info(f"Refund rejected for {item_id}: {reason}")
        return item


class ListRefundRequestsUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, user_id: str) -> list[RefundRequestView]:
        async with self._uow() as uow:
            orders = await uow.orders.list_by_user(user_id)

        requests = [
            RefundRequestView.of(order, item)
            for order in orders
            for item in order.items
            if item.refund_requested_at
        ]
        requests.sort(key=lambda r: r.item.refund_requested_at, reverse=True)
        return requests


class ListAllRefundRequestsUseCase:
    """Admin queue: every refund request across users, newest request first."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, refund_status: Optional[RefundStatus] = None) -> list[RefundRequestView]:
        async with self._uow() as uow:
            orders = await uow.orders.list_with_refund_requests(refund_status)

        requests = [
            RefundRequestView.of(order, item)
            for order in orders
            for item in order.items
            if item.refund_requested_at and (refund_status is None or item.refund_status == refund_status)
        ]
        requests.sort(key=lambda r: r.item.refund_requested_at, reverse=True)
        logger.info(f"Listed {len(requests)} refund request(s), status filter {refund_status}")
        return requests
