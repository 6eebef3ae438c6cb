from enum import Enum
from typing import Iterable

from order_lifecycle.domain.exceptions import InvalidTransitionError


class OrderStatus(str, Enum):
    ORDERED = "ORDERED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    DEPARTED_FOR_RETURNING = "DEPARTED_FOR_RETURNING"
    RETURNED = "RETURNED"
    RETURN_CANCELLED = "RETURN_CANCELLED"
    REFUNDED = "REFUNDED"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.ORDERED: frozenset({OrderStatus.CANCELLED, OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_REQUESTED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.RETURN_REQUESTED: frozenset({OrderStatus.DEPARTED_FOR_RETURNING, OrderStatus.RETURN_CANCELLED}),
    OrderStatus.DEPARTED_FOR_RETURNING: frozenset({OrderStatus.RETURNED, OrderStatus.RETURN_CANCELLED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.RETURN_CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

RETURN_IN_PROGRESS = frozenset({OrderStatus.RETURN_REQUESTED, OrderStatus.DEPARTED_FOR_RETURNING})


def next_statuses(current: OrderStatus) -> frozenset[OrderStatus]:
    return TRANSITIONS.get(current, frozenset())


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in next_statuses(current)


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is an edge of the table."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def is_terminal(status: OrderStatus) -> bool:
    return not next_statuses(status)


def overall_status(statuses: Iterable[OrderStatus]) -> OrderStatus:
    """Aggregate status of an order, derived from its item statuses on every read."""
    statuses = list(statuses)
    if not statuses:
        return OrderStatus.ORDERED
    if any(s in RETURN_IN_PROGRESS for s in statuses):
        return OrderStatus.RETURN_REQUESTED
    for candidate in (
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.RETURNED,
        OrderStatus.REFUNDED,
    ):
        if all(s == candidate for s in statuses):
            return candidate
    if OrderStatus.SHIPPED in statuses:
        return OrderStatus.SHIPPED
    return OrderStatus.ORDERED
