from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_actor_role
from marketplace.errors import ConcurrentUpdateFailed, ImmutableField, OrderNotFound, Unauthorized
from marketplace.logging_config import get_logger
from marketplace.models import Order, OrderStatus
from marketplace.services.audit_service import log_audit
from marketplace.services.order_status_service import validate_transition
from marketplace.services.retry_policy import RetryPolicy, order_update_policy

logger = get_logger('services.order_update')

IMMUTABLE_ORDER_FIELDS = frozenset({'id', 'quote_id', 'client_id', 'supplier_id', 'amount', 'created_at'})
PAYMENT_WORKFLOW_FIELDS = frozenset(
    {'payment_reference', 'payment_submitted_at', 'payment_confirmed_at', 'payment_confirmed_by'}
)
ORDER_FIELDS = frozenset(column.key for column in Order.__table__.columns)

_MISSING_COLUMN_PATTERNS = (
    re.compile(r'column "?(?P<column>\w+)"?(?: of relation "?\w+"?)? does not exist', re.IGNORECASE),
    re.compile(r'no such column: (?:\w+\.)?(?P<column>\w+)', re.IGNORECASE),
    re.compile(r'has no column named (?P<column>\w+)', re.IGNORECASE),
)

_supported_columns_cache: dict[str, frozenset[str]] = {}


@dataclass(frozen=True)
class OrderUpdateResult:
    order: Order
    from_status: OrderStatus
    to_status: OrderStatus
    status_changed: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def supported_order_columns(db: Session) -> frozenset[str]:
    """Columns the connected store actually has on ``orders``, probed once per database."""
    connection = db.connection()
    key = str(connection.engine.url)
    cached = _supported_columns_cache.get(key)
    if cached is None:
        cached = frozenset(column['name'] for column in inspect(connection).get_columns(Order.__tablename__))
        _supported_columns_cache[key] = cached
    return cached


def forget_supported_columns() -> None:
    _supported_columns_cache.clear()


def build_order_payload(db: Session, fields: dict[str, Any]) -> dict[str, Any]:
    supported = supported_order_columns(db)
    payload: dict[str, Any] = {}
    for key, value in fields.items():
        if key not in supported:
            logger.warning(
                'Dropping order field %s: column not available in current schema',
                key,
                extra={'dropped_field': key},
            )
            continue
        payload[key] = value
    return payload


def _missing_column(exc: Exception) -> str | None:
    message = str(getattr(exc, 'orig', None) or exc)
    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group('column')
    return None


def _conditional_write(
    db: Session,
    order_id: int,
    expected_status: OrderStatus | None,
    payload: dict[str, Any],
) -> bool:
    # Fallback for schema drift the capability probe did not see: prune and retry.
    while True:
        stmt = update(Order).where(Order.id == order_id)
        if expected_status is not None:
            stmt = stmt.where(Order.status == expected_status)
        stmt = stmt.values(**payload).execution_options(synchronize_session=False)
        try:
            with db.begin_nested():
                result = db.execute(stmt)
        except (OperationalError, ProgrammingError) as exc:
            column = _missing_column(exc)
            if column is None or column not in payload or column in {'status', 'updated_at'}:
                raise
            logger.warning(
                'Order update column %s rejected by the store, retrying without it',
                column,
                extra={'order_id': order_id, 'dropped_field': column},
            )
            payload = {key: value for key, value in payload.items() if key != column}
            forget_supported_columns()
            continue
        return result.rowcount == 1


def read_order_status(db: Session, order_id: int) -> OrderStatus:
    status = db.execute(select(Order.status).where(Order.id == order_id)).scalar_one_or_none()
    if status is None:
        raise OrderNotFound(order_id)
    return OrderStatus(status)


def load_order(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _check_writable(fields: dict[str, Any], *, payment_workflow: bool) -> None:
    for key in fields:
        if key not in ORDER_FIELDS:
            raise ValueError(f'Unknown order field: {key}')
        if key == 'status':
            raise ValueError('Status changes must be requested through the status argument')
        if key in IMMUTABLE_ORDER_FIELDS:
            raise ImmutableField(key)
        if key in PAYMENT_WORKFLOW_FIELDS and not payment_workflow:
            raise ImmutableField(key)


def apply_order_update(
    db: Session,
    order_id: int,
    *,
    status: OrderStatus | str | None = None,
    fields: dict[str, Any] | None = None,
    payment_workflow: bool = False,
    stop_if_reached: bool = False,
    policy: RetryPolicy | None = None,
) -> OrderUpdateResult:
    """
    Apply a partial update to an order.

    Status changes are validated against the transition table and written with
    ``UPDATE ... WHERE status = <status read>``. When that matches no row the
    status is re-read: unchanged means a transient fault, changed means the
    requested transition is re-validated against the new status and retried
    until the policy runs out of attempts. With ``stop_if_reached`` a concurrent
    writer that already moved the order to the requested status ends the update
    without writing.
    """
    fields = dict(fields or {})
    _check_writable(fields, payment_workflow=payment_workflow)
    policy = policy or order_update_policy()

    current = read_order_status(db, order_id)
    if status is None:
        if not fields:
            return OrderUpdateResult(load_order(db, order_id), current, current, False)
        payload = build_order_payload(db, {**fields, 'updated_at': _now()})
        if not _conditional_write(db, order_id, None, payload):
            raise OrderNotFound(order_id)
        return OrderUpdateResult(load_order(db, order_id), current, current, False)

    requested = OrderStatus(status)
    if stop_if_reached and current == requested:
        return OrderUpdateResult(load_order(db, order_id), current, current, False)
    validate_transition(current, requested, payment_workflow=payment_workflow)

    payload = build_order_payload(db, {**fields, 'status': requested, 'updated_at': _now()})
    for attempt in policy.attempts():
        policy.sleep_before(attempt)
        if _conditional_write(db, order_id, current, payload):
            return OrderUpdateResult(load_order(db, order_id), current, requested, current != requested)

        latest = read_order_status(db, order_id)
        if latest == current:
            raise ConcurrentUpdateFailed('order', order_id, 'write did not apply and status is unchanged')
        logger.warning(
            'Order status changed concurrently',
            extra={
                'order_id': order_id,
                'attempt': attempt,
                'expected_status': current.value,
                'latest_status': latest.value,
                'target_status': requested.value,
            },
        )
        if stop_if_reached and latest == requested:
            return OrderUpdateResult(load_order(db, order_id), latest, latest, False)
        validate_transition(latest, requested, payment_workflow=payment_workflow)
        current = latest

    raise ConcurrentUpdateFailed(
        'order', order_id, f'status kept changing after {policy.max_attempts} attempts'
    )


def update_order_status(
    db: Session,
    order_id: int,
    new_status: OrderStatus | str,
    actor: Principal,
    *,
    ip: str | None = None,
) -> Order:
    """Generic status edit for admins and the supplier fulfilling the order."""
    require_actor_role(actor, Role.ADMIN, Role.SUPPLIER)
    order = load_order(db, order_id)
    if actor.role == Role.SUPPLIER and order.supplier_id != actor.id:
        raise Unauthorized('Suppliers can only update their own orders', (Role.SUPPLIER.value,))

    result = apply_order_update(db, order_id, status=new_status)
    if result.status_changed:
        log_audit(
            db,
            actor_user_id=actor.id,
            action='ORDER_STATUS_CHANGED',
            entity_type='order',
            entity_id=order_id,
            ip=ip,
            metadata={'from_status': result.from_status.value, 'to_status': result.to_status.value},
        )
    return result.order


def update_order_fields(
    db: Session,
    order_id: int,
    actor: Principal,
    fields: dict[str, Any],
    *,
    ip: str | None = None,
) -> Order:
    require_actor_role(actor, Role.ADMIN)
    fields = dict(fields)
    status = fields.pop('status', None)
    result = apply_order_update(db, order_id, status=status, fields=fields)
    log_audit(
        db,
        actor_user_id=actor.id,
        action='ORDER_UPDATED',
        entity_type='order',
        entity_id=order_id,
        ip=ip,
        metadata={
            'fields': sorted(fields),
            'from_status': result.from_status.value,
            'to_status': result.to_status.value,
        },
    )
    return result.order
