import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from order_lifecycle.domain.identifiers import IdentifierKind
from order_lifecycle.domain.models import Order, OrderItem, RefundStatus, money
from order_lifecycle.domain.status import OrderStatus, ensure_transition
from order_lifecycle.domain.exceptions import (
    InvalidQuantityError, ItemNotFoundError, RefundRequestConflictError, ReturnNotFoundError,
    ReturnWindowExpiredError, ValidationError
)
from order_lifecycle.application.identifiers import IdentifierAllocator

logger = logging.getLogger(__name__)

RETURN_WINDOW_DAYS = 7

# identifier fields that must be re-issued when a batch is split
SPLIT_IDENTIFIERS = (("cancel_id", IdentifierKind.CANCEL), ("return_id", IdentifierKind.RETURN))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar days between two instants, both truncated to UTC midnight."""
    def as_date(moment):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).date()
    return (as_date(later) - as_date(earlier)).days


class ItemTransitionService:
    """The one algorithm behind every item status change.

    locate -> validate transition -> validate quantity -> status preconditions
    -> allocate identifiers -> split or mutate -> persist + outbox event.
    Callers own the atomic scope and the commit.
    """

    def __init__(
        self,
        identifiers: Optional[IdentifierAllocator] = None,
        clock: Callable[[], datetime] = utc_now,
        return_window_days: int = RETURN_WINDOW_DAYS,
    ):
        self._identifiers = identifiers or IdentifierAllocator()
        self._clock = clock
        self._return_window_days = return_window_days

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    async def apply(
        self,
        uow,
        order: Order,
        item_id: str,
        target: OrderStatus,
        quantity: Optional[int] = None,
        note: str = "",
        changes: Optional[dict] = None,
        approving_refund: bool = False,
    ) -> OrderItem:
        item = order.get_item(item_id)
        quantity = item.quantity if quantity is None else quantity

        ensure_transition(item.order_status, target)
        if quantity < 1:
            raise ValidationError("Quantity must be a positive integer")
        if quantity > item.quantity:
            raise InvalidQuantityError(quantity, item.quantity)

        now = self._clock()
        changes = dict(changes or {})
        self._check_preconditions(item, target, now, approving_refund)
        changes = {**self._status_fields(item, target, quantity, note, now), **changes}

        reserved = order.identifiers()

        async def allocate(kind: IdentifierKind) -> str:
            value = await self._identifiers.allocate(uow, kind, reserved)
            reserved.add(value)
            return value

        if target == OrderStatus.CANCELLED and not item.cancel_id and "cancel_id" not in changes:
            changes["cancel_id"] = await allocate(IdentifierKind.CANCEL)
        if target in (OrderStatus.RETURN_REQUESTED, OrderStatus.RETURNED) and not item.return_id \
                and "return_id" not in changes:
            changes["return_id"] = await allocate(IdentifierKind.RETURN)

        new_item_id = None
        if quantity < item.quantity:
            new_item_id = await allocate(IdentifierKind.ITEM)
            for field, kind in SPLIT_IDENTIFIERS:
                if getattr(item, field) and field not in changes:
                    changes[field] = await allocate(kind)

        source_status = item.order_status
        moved = order.apply_transition(item_id, target, quantity, note, now, new_item_id, **changes)
        await uow.orders.save(order)
        await uow.outbox.create(
            event_type="order_item.status_changed",
            event_data={
                "order_id": order.order_id,
                "user_id": order.user_id,
                "item_id": moved.item_id,
                "source_item_id": item_id,
                "from_status": source_status.value,
                "status": target.value,
                "quantity": quantity,
                "note": note,
            },
            order_id=order.order_id,
        )

        if new_item_id:
            logger.info(f"Split {item_id}: {quantity} unit(s) moved to {new_item_id} as {target.value}")
        else:
            logger.info(f"Item {item_id} moved {source_status.value} -> {target.value}")
        return moved

    def _check_preconditions(self, item: OrderItem, target: OrderStatus, now: datetime, approving_refund: bool):
        if target == OrderStatus.RETURN_REQUESTED:
            delivered_at = item.delivered_at()
            if delivered_at is None:
                raise ValidationError("Delivery date missing in status history")
            elapsed = days_between(delivered_at, now)
            if elapsed > self._return_window_days:
                raise ReturnWindowExpiredError(elapsed, self._return_window_days)

        if target == OrderStatus.REFUNDED:
            if item.refund_status == RefundStatus.REFUNDED:
                raise RefundRequestConflictError(f"Refund already processed for item {item.item_id}")
            if item.has_pending_refund_request() and not approving_refund:
                raise RefundRequestConflictError(
                    f"Item {item.item_id} has a pending refund request; approve or reject it instead"
                )

    @staticmethod
    def _status_fields(item: OrderItem, target: OrderStatus, quantity: int, note: str, now: datetime) -> dict:
        if target == OrderStatus.CANCELLED:
            return {"cancelled_at": now}
        if target == OrderStatus.RETURN_REQUESTED:
            return {"return_requested_at": now, "return_request_note": note}
        if target == OrderStatus.RETURNED:
            return {"returned_at": now}
        if target == OrderStatus.RETURN_CANCELLED:
            return {"return_cancelled_at": now}
        if target == OrderStatus.REFUNDED:
            return {
                "refund_amount": item.amount.total_amount * quantity,
                "refund_status": RefundStatus.REFUNDED,
                "refund_processed_at": now,
            }
        return {}


async def load_order_for_item(uow, item_id: str, user_id: Optional[str] = None) -> Order:
    order = await uow.orders.get_by_item_id(item_id, for_update=True)
    if not order or (user_id is not None and order.user_id != user_id):
        raise ItemNotFoundError(f"Item {item_id} not found")
    return order


class TransitionItemUseCase:
    """Admin status update: any legal target, full or partial batch."""

    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(
        self, item_id: str, target: OrderStatus, quantity: Optional[int] = None, note: str = ""
    ) -> OrderItem:
        async with self._uow() as uow:
            order = await load_order_for_item(uow, item_id)
            moved = await self._transitions.apply(uow, order, item_id, target, quantity, note)
            await uow.commit()
        return moved


class CancelItemUseCase:
    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(self, user_id: str, item_id: str, quantity: int, note: str = "Cancelled by user") -> OrderItem:
        async with self._uow() as uow:
            order = await load_order_for_item(uow, item_id, user_id)
            moved = await self._transitions.apply(uow, order, item_id, OrderStatus.CANCELLED, quantity, note)
            await uow.commit()
        logger.info(f"User {user_id} cancelled {quantity} unit(s) of {item_id} ({moved.cancel_id})")
        return moved


class RequestReturnUseCase:
    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(self, user_id: str, item_id: str, quantity: int, note: str) -> OrderItem:
        if not note or not note.strip():
            raise ValidationError("Return note is required")

        async with self._uow() as uow:
            order = await load_order_for_item(uow, item_id, user_id)
            moved = await self._transitions.apply(uow, order, item_id, OrderStatus.RETURN_REQUESTED, quantity, note)
            await uow.commit()
        logger.info(f"Return {moved.return_id} requested for {quantity} unit(s) of {item_id}")
        return moved


class CancelReturnUseCase:
    """Withdraw a return. Users pass their id; admins leave it out."""

    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(
        self,
        item_id: str,
        quantity: Optional[int] = None,
        user_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> OrderItem:
        if note is None:
            note = "Return cancelled by user" if user_id else "Return request cancelled by admin"

        async with self._uow() as uow:
            order = await load_order_for_item(uow, item_id, user_id)
            moved = await self._transitions.apply(uow, order, item_id, OrderStatus.RETURN_CANCELLED, quantity, note)
            await uow.commit()
        return moved


class ProcessRefundUseCase:
    """Admin refund of a cancelled or returned batch."""

    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(
        self,
        item_id: str,
        quantity: Optional[int] = None,
        refund_amount=None,
        note: str = "Refund processed by admin",
    ) -> OrderItem:
        changes = {}
        if refund_amount is not None:
            if refund_amount <= 0:
                raise ValidationError("Invalid refund amount")
            changes["refund_amount"] = money(refund_amount)

        async with self._uow() as uow:
            order = await load_order_for_item(uow, item_id)
            moved = await self._transitions.apply(
                uow, order, item_id, OrderStatus.REFUNDED, quantity, note, changes=changes
            )
            await uow.commit()
        logger.info(f"Refunded {moved.refund_amount} for {moved.quantity} unit(s) of {item_id}")
        return moved


class UpdateReturnStatusUseCase:
    """Admin progress of a return batch, addressed by its return id."""

    def __init__(self, unit_of_work, transitions: ItemTransitionService):
        self._uow = unit_of_work
        self._transitions = transitions

    async def __call__(self, return_id: str, target: OrderStatus, note: str = "") -> OrderItem:
        async with self._uow() as uow:
            order = await uow.orders.get_by_return_id(return_id, for_update=True)
            item = order.find_item_by_return_id(return_id) if order else None
            if not item:
                raise ReturnNotFoundError(f"Return request {return_id} not found")
            moved = await self._transitions.apply(uow, order, item.item_id, target, None, note)
            await uow.commit()
        return moved
