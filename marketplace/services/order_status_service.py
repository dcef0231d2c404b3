from __future__ import annotations

from collections import deque

from marketplace.errors import InvalidTransition
from marketplace.models import OrderStatus

INITIAL_ORDER_STATUS = OrderStatus.PENDING_ADMIN_CONFIRMATION

ORDER_STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_ADMIN_CONFIRMATION: frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED}),
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.AWAITING_CONFIRMATION, OrderStatus.CANCELLED}),
    OrderStatus.AWAITING_CONFIRMATION: frozenset(
        {OrderStatus.PAYMENT_CONFIRMED, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAYMENT_CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.PICKUP_SCHEDULED, OrderStatus.CANCELLED}),
    OrderStatus.PICKUP_SCHEDULED: frozenset(
        {OrderStatus.PICKED_UP, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}
    ),
    OrderStatus.PICKED_UP: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.SHIPPED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.SHIPPED}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.DISPUTED}),
    OrderStatus.COMPLETED: frozenset(),
    # Resolving a dispute in the client's favour reopens fulfillment.
    OrderStatus.DISPUTED: frozenset({OrderStatus.REFUNDED, OrderStatus.PAYMENT_CONFIRMED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_ORDER_STATUSES = frozenset(status for status, targets in ORDER_STATUS_TRANSITIONS.items() if not targets)

# Edges only the payment reference workflow may take.
PAYMENT_CONTROLLED_TARGETS = frozenset({OrderStatus.AWAITING_CONFIRMATION, OrderStatus.PAYMENT_CONFIRMED})
PAYMENT_CONTROLLED_EDGES = frozenset({(OrderStatus.AWAITING_CONFIRMATION, OrderStatus.PENDING_PAYMENT)})


def _coerce(status: OrderStatus | str) -> OrderStatus | None:
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(str(status).strip().upper())
    except ValueError:
        return None


def can_transition(current: OrderStatus | str, requested: OrderStatus | str) -> bool:
    """Structural check only. A request for the current status is a no-op and allowed."""
    current_status = _coerce(current)
    requested_status = _coerce(requested)
    if current_status is None or requested_status is None:
        return False
    if current_status == requested_status:
        return True
    return requested_status in ORDER_STATUS_TRANSITIONS[current_status]


def allowed_transitions(current: OrderStatus | str) -> list[OrderStatus]:
    current_status = _coerce(current)
    if current_status is None:
        return []
    return sorted(ORDER_STATUS_TRANSITIONS[current_status], key=lambda status: status.value)


def is_payment_controlled(current: OrderStatus | str, requested: OrderStatus | str) -> bool:
    current_status = _coerce(current)
    requested_status = _coerce(requested)
    if requested_status in PAYMENT_CONTROLLED_TARGETS:
        return True
    return (current_status, requested_status) in PAYMENT_CONTROLLED_EDGES


def validate_transition(
    current: OrderStatus | str,
    requested: OrderStatus | str,
    *,
    payment_workflow: bool = False,
) -> None:
    if not payment_workflow and is_payment_controlled(current, requested):
        raise InvalidTransition(current, requested, 'reserved for the payment reference workflow')
    if not can_transition(current, requested):
        raise InvalidTransition(current, requested)


def reachable_statuses(start: OrderStatus = INITIAL_ORDER_STATUS) -> set[OrderStatus]:
    seen = {start}
    queue = deque([start])
    while queue:
        status = queue.popleft()
        for target in ORDER_STATUS_TRANSITIONS[status]:
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen
