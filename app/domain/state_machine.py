from typing import Dict, FrozenSet

from app.domain.models import OrderStatus
from app.domain.exceptions import InvalidTransitionError

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.DELIVERING, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERING: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def allowed_transitions(current: OrderStatus) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[current]


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[status]


def next_status(current: OrderStatus, requested: OrderStatus) -> OrderStatus:
    """Проверка перехода по графу статусов. Без побочных эффектов."""
    allowed = TRANSITIONS[current]
    if requested not in allowed:
        raise InvalidTransitionError(current, requested, allowed)
    return requested
