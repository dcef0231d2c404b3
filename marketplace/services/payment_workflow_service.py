from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, assert_client_scope, require_actor_role
from marketplace.config import settings
from marketplace.errors import DuplicateReference, EmptyReason, EmptyReference, InvalidTransition
from marketplace.logging_config import get_logger
from marketplace.models import Order, OrderStatus, PaymentAuditAction, PaymentAuditLog
from marketplace.services.order_status_service import can_transition
from marketplace.services.order_update_service import OrderUpdateResult, apply_order_update, load_order
from marketplace.services.payment_audit_service import append_payment_audit, list_payment_audit

logger = get_logger('services.payment_workflow')

PENDING_PAYMENT_STATUSES = (OrderStatus.PENDING_PAYMENT, OrderStatus.AWAITING_CONFIRMATION)
PAID_STATUSES = (
    OrderStatus.PAYMENT_CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.PICKED_UP,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.IN_TRANSIT,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)
REJECTION_NOTE_PREFIX = '[Admin Action] Payment reference rejected: '


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _reference_in_use(db: Session, reference: str, *, excluding_order_id: int) -> bool:
    return db.execute(
        select(Order.id)
        .where(Order.payment_reference == reference, Order.id != excluding_order_id)
        .limit(1)
    ).first() is not None


def _apply_with_reference(db: Session, order_id: int, reference: str | None, **kwargs) -> OrderUpdateResult:
    # The unique index catches writers that passed the read check before a concurrent commit.
    try:
        return apply_order_update(db, order_id, **kwargs)
    except IntegrityError as exc:
        if reference and 'payment_reference' in str(exc.orig):
            logger.warning(
                'Payment reference claimed concurrently',
                extra={'order_id': order_id, 'payment_reference': reference},
            )
            raise DuplicateReference(reference) from exc
        raise


def submit_payment_reference(
    db: Session,
    order_id: int,
    actor: Principal,
    reference: str,
    notes: str | None = None,
) -> Order:
    require_actor_role(actor, Role.CLIENT)
    order = load_order(db, order_id)
    assert_client_scope(actor, order.client_id)

    current = OrderStatus(order.status)
    if not can_transition(current, OrderStatus.AWAITING_CONFIRMATION):
        raise InvalidTransition(current, OrderStatus.AWAITING_CONFIRMATION)

    normalized = (reference or '').strip()
    if not normalized:
        raise EmptyReference()
    if normalized != order.payment_reference and _reference_in_use(db, normalized, excluding_order_id=order_id):
        raise DuplicateReference(normalized)

    previous_reference = order.payment_reference
    action = (
        PaymentAuditAction.REFERENCE_RESUBMITTED
        if previous_reference or current == OrderStatus.AWAITING_CONFIRMATION
        else PaymentAuditAction.REFERENCE_SUBMITTED
    )
    fields: dict = {'payment_reference': normalized, 'payment_submitted_at': _now()}
    clean_notes = (notes or '').strip()
    if clean_notes:
        fields['payment_notes'] = clean_notes

    result = _apply_with_reference(
        db,
        order_id,
        normalized,
        status=OrderStatus.AWAITING_CONFIRMATION,
        fields=fields,
        payment_workflow=True,
    )
    append_payment_audit(
        db,
        order_id=order_id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        action=action,
        from_status=result.from_status,
        to_status=OrderStatus.AWAITING_CONFIRMATION,
        payment_reference=normalized,
        notes=clean_notes or None,
        metadata={
            'source': 'payment_workflow.submit_payment_reference',
            'previous_reference': previous_reference,
        },
    )
    logger.info(
        'Payment reference submitted',
        extra={'order_id': order_id, 'audit_action': action.value, 'from_status': result.from_status.value},
    )
    return result.order


def confirm_payment(
    db: Session,
    order_id: int,
    actor: Principal,
    reference: str | None = None,
    notes: str | None = None,
) -> Order:
    """Admin confirms the transfer. Confirming an already confirmed order changes nothing."""
    require_actor_role(actor, Role.ADMIN)
    order = load_order(db, order_id)
    current = OrderStatus(order.status)
    if current == OrderStatus.PAYMENT_CONFIRMED:
        return order
    if not can_transition(current, OrderStatus.PAYMENT_CONFIRMED):
        raise InvalidTransition(current, OrderStatus.PAYMENT_CONFIRMED)

    clean_reference = (reference or '').strip() or None
    clean_notes = (notes or '').strip() or None
    fields: dict = {'payment_confirmed_at': _now(), 'payment_confirmed_by': actor.id}
    if clean_reference:
        if clean_reference != order.payment_reference and _reference_in_use(
            db, clean_reference, excluding_order_id=order_id
        ):
            raise DuplicateReference(clean_reference)
        fields['payment_reference'] = clean_reference
    if clean_notes:
        fields['payment_notes'] = clean_notes

    result = _apply_with_reference(
        db,
        order_id,
        clean_reference,
        status=OrderStatus.PAYMENT_CONFIRMED,
        fields=fields,
        payment_workflow=True,
        stop_if_reached=True,
    )
    if not result.status_changed:
        logger.info('Payment already confirmed concurrently', extra={'order_id': order_id})
        return result.order

    append_payment_audit(
        db,
        order_id=order_id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        action=PaymentAuditAction.PAYMENT_CONFIRMED,
        from_status=result.from_status,
        to_status=OrderStatus.PAYMENT_CONFIRMED,
        payment_reference=clean_reference or result.order.payment_reference,
        notes=clean_notes,
        metadata={'source': 'payment_workflow.confirm_payment'},
    )
    logger.info('Payment confirmed', extra={'order_id': order_id, 'from_status': result.from_status.value})
    return result.order


def reject_payment(db: Session, order_id: int, actor: Principal, reason: str) -> Order:
    require_actor_role(actor, Role.ADMIN)
    order = load_order(db, order_id)
    current = OrderStatus(order.status)
    if current != OrderStatus.AWAITING_CONFIRMATION:
        raise InvalidTransition(current, OrderStatus.PENDING_PAYMENT, 'order is not awaiting confirmation')

    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise EmptyReason()

    admin_note = f'{REJECTION_NOTE_PREFIX}{clean_reason}'
    existing_notes = (order.payment_notes or '').strip()
    result = apply_order_update(
        db,
        order_id,
        status=OrderStatus.PENDING_PAYMENT,
        fields={
            'payment_notes': f'{order.payment_notes}\n{admin_note}' if existing_notes else admin_note,
            'payment_confirmed_at': None,
            'payment_confirmed_by': None,
            'payment_submitted_at': None,
        },
        payment_workflow=True,
    )
    append_payment_audit(
        db,
        order_id=order_id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        action=PaymentAuditAction.PAYMENT_REJECTED,
        from_status=result.from_status,
        to_status=OrderStatus.PENDING_PAYMENT,
        payment_reference=result.order.payment_reference,
        notes=clean_reason,
        metadata={'source': 'payment_workflow.reject_payment'},
    )
    logger.info('Payment submission rejected', extra={'order_id': order_id})
    return result.order


def get_audit_log(db: Session, order_id: int, actor: Principal) -> list[PaymentAuditLog]:
    require_actor_role(actor, Role.ADMIN, Role.CLIENT)
    order = load_order(db, order_id)
    assert_client_scope(actor, order.client_id)
    return list_payment_audit(db, order_id)


def _page_bounds(page: int | None, page_size: int | None) -> tuple[int, int] | None:
    if not page_size or page_size <= 0:
        return None
    size = min(max(int(page_size), 1), settings.payment_list_max_page_size)
    number = max(int(page or 1), 1)
    return (number - 1) * size, size


def list_pending_payment_orders(db: Session, *, page: int | None = None, page_size: int | None = None) -> list[Order]:
    stmt = (
        select(Order)
        .where(Order.status.in_(PENDING_PAYMENT_STATUSES))
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    bounds = _page_bounds(page, page_size)
    if bounds:
        offset, limit = bounds
        stmt = stmt.offset(offset).limit(limit)
    return db.execute(stmt).scalars().all()


def list_client_orders(
    db: Session,
    client_id: int,
    *,
    page: int | None = None,
    page_size: int | None = None,
) -> list[Order]:
    stmt = select(Order).where(Order.client_id == client_id).order_by(Order.created_at.desc(), Order.id.desc())
    bounds = _page_bounds(page, page_size)
    if bounds:
        offset, limit = bounds
        stmt = stmt.offset(offset).limit(limit)
    return db.execute(stmt).scalars().all()


@dataclass
class PaymentBucket:
    count: int = 0
    amount: Decimal = field(default_factory=lambda: Decimal('0.00'))


@dataclass
class PaymentStatistics:
    pending_payment: PaymentBucket
    paid: PaymentBucket
    total: PaymentBucket


def payment_statistics(db: Session) -> PaymentStatistics:
    rows = db.execute(
        select(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.amount), 0)).group_by(Order.status)
    ).all()
    stats = PaymentStatistics(pending_payment=PaymentBucket(), paid=PaymentBucket(), total=PaymentBucket())
    for status, count, amount in rows:
        amount = Decimal(str(amount)).quantize(Decimal('0.01'))
        stats.total.count += count
        stats.total.amount += amount
        if status in PENDING_PAYMENT_STATUSES:
            stats.pending_payment.count += count
            stats.pending_payment.amount += amount
        elif status in PAID_STATUSES:
            stats.paid.count += count
            stats.paid.amount += amount
    return stats
