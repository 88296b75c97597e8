"""
orders/workflow.py -- The order status state machine.

The permitted edges are data, not scattered string comparisons:

    NEW -> IN_WORK -> ASSEMBLED -> ON_DELIVERY -> DELIVERED
    NEW | IN_WORK | ASSEMBLED | ON_DELIVERY -> CANCELED

Forward moves go one step at a time; CANCELED is reachable from every
non-terminal state. DELIVERED and CANCELED are terminal. Everything else,
including a write of the current status, is an InvalidTransition.
"""

from __future__ import annotations

from types import MappingProxyType

from core.errors import InvalidTransition
from orders.models import OrderStatus

INITIAL_STATUS = OrderStatus.NEW

# Forward order defines "progress" direction. Higher index = more progressed.
FORWARD_ORDER: tuple[OrderStatus, ...] = (
    OrderStatus.NEW,
    OrderStatus.IN_WORK,
    OrderStatus.ASSEMBLED,
    OrderStatus.ON_DELIVERY,
    OrderStatus.DELIVERED,
)

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELED})


def _build_transitions() -> dict[OrderStatus, frozenset[OrderStatus]]:
    table: dict[OrderStatus, frozenset[OrderStatus]] = {}
    for index, status in enumerate(FORWARD_ORDER):
        if status in TERMINAL_STATUSES:
            table[status] = frozenset()
        else:
            table[status] = frozenset({FORWARD_ORDER[index + 1], OrderStatus.CANCELED})
    table[OrderStatus.CANCELED] = frozenset()
    return table


TRANSITIONS = MappingProxyType(_build_transitions())


def allowed_next(status: OrderStatus) -> frozenset[OrderStatus]:
    """Return the statuses reachable from status in one step."""
    return TRANSITIONS[OrderStatus(status)]


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return OrderStatus(new) in allowed_next(current)


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    """Raise InvalidTransition unless current -> new is a permitted edge."""
    current, new = OrderStatus(current), OrderStatus(new)
    if can_transition(current, new):
        return
    if current in TERMINAL_STATUSES:
        detail = f"{current.value} is terminal"
    else:
        allowed = ", ".join(sorted(s.value for s in allowed_next(current)))
        detail = f"{current.value} -> {new.value} not allowed (allowed: {allowed})"
    raise InvalidTransition(detail=detail)
