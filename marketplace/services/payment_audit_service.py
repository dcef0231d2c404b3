from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.immutability import register_immutability_listeners
from marketplace.models import OrderStatus, PaymentAuditAction, PaymentAuditLog, UserRole
from marketplace.services.order_status_service import can_transition

register_immutability_listeners()

_SUBMISSION_ACTIONS = {PaymentAuditAction.REFERENCE_SUBMITTED, PaymentAuditAction.REFERENCE_RESUBMITTED}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class PaymentHistoryStep:
    at: datetime
    action: PaymentAuditAction
    from_status: OrderStatus | None
    to_status: OrderStatus | None
    payment_reference: str | None


def _next_created_at(db: Session, order_id: int) -> datetime:
    now = _now()
    last = db.execute(
        select(PaymentAuditLog.created_at)
        .where(PaymentAuditLog.order_id == order_id)
        .order_by(PaymentAuditLog.created_at.desc(), PaymentAuditLog.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if last is not None and _as_utc(last) >= now:
        return _as_utc(last) + timedelta(microseconds=1)
    return now


def append_payment_audit(
    db: Session,
    *,
    order_id: int,
    actor_user_id: int | None,
    actor_role: UserRole | str | None,
    action: PaymentAuditAction,
    from_status: OrderStatus | None,
    to_status: OrderStatus | None,
    payment_reference: str | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
) -> PaymentAuditLog:
    entry = PaymentAuditLog(
        order_id=order_id,
        actor_user_id=actor_user_id,
        actor_role=UserRole(getattr(actor_role, 'value', actor_role)) if actor_role else None,
        action=action,
        from_status=from_status,
        to_status=to_status,
        payment_reference=payment_reference,
        notes=notes,
        meta=metadata or {},
        created_at=_next_created_at(db, order_id),
    )
    db.add(entry)
    db.flush()
    return entry


def list_payment_audit(db: Session, order_id: int) -> list[PaymentAuditLog]:
    return db.execute(
        select(PaymentAuditLog)
        .where(PaymentAuditLog.order_id == order_id)
        .order_by(PaymentAuditLog.created_at.asc(), PaymentAuditLog.id.asc())
    ).scalars().all()


def replay_payment_history(entries: Sequence[PaymentAuditLog]) -> list[PaymentHistoryStep]:
    ordered = sorted(entries, key=lambda entry: (_as_utc(entry.created_at), entry.id or 0))
    return [
        PaymentHistoryStep(
            at=_as_utc(entry.created_at),
            action=entry.action,
            from_status=entry.from_status,
            to_status=entry.to_status,
            payment_reference=entry.payment_reference,
        )
        for entry in ordered
    ]


def find_history_violations(steps: Sequence[PaymentHistoryStep]) -> list[str]:
    """Check a replayed payment history against the status graph and submission order."""
    violations: list[str] = []
    previous: PaymentHistoryStep | None = None
    seen_submission = False
    for index, step in enumerate(steps):
        if step.from_status and step.to_status and not can_transition(step.from_status, step.to_status):
            violations.append(f'#{index} {step.action.value}: illegal edge {step.from_status.value} -> {step.to_status.value}')
        if step.action == PaymentAuditAction.REFERENCE_RESUBMITTED and not seen_submission:
            violations.append(f'#{index} resubmission without an earlier submission')
        if (
            previous is not None
            and previous.action == PaymentAuditAction.PAYMENT_REJECTED
            and step.action == PaymentAuditAction.PAYMENT_CONFIRMED
        ):
            violations.append(f'#{index} payment confirmed directly after a rejection')
        if step.action in _SUBMISSION_ACTIONS:
            seen_submission = True
        previous = step
    return violations
