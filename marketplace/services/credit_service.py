from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_actor_role
from marketplace.config import settings
from marketplace.errors import ClientNotFound, ConcurrentUpdateFailed, CreditLimitExceeded, InvalidCreditAdjustment
from marketplace.logging_config import get_logger
from marketplace.models import CreditAdjustmentType, CreditLimitAdjustment, User, UserRole
from marketplace.services.audit_service import log_audit
from marketplace.services.retry_policy import RetryPolicy, credit_reservation_policy

logger = get_logger('services.credit')

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_money(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f'Invalid amount: {value!r}') from exc
    if not amount.is_finite():
        raise ValueError(f'Invalid amount: {value!r}')
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CreditProfile:
    client_id: int
    credit_limit: Decimal | None
    credit_used: Decimal

    @property
    def unconstrained(self) -> bool:
        return self.credit_limit is None or self.credit_limit == 0

    @property
    def available(self) -> Decimal | None:
        if self.unconstrained:
            return None
        return max(ZERO, self.credit_limit - self.credit_used)


@dataclass(frozen=True)
class CreditReservation:
    client_id: int
    amount: Decimal
    previous_used: Decimal
    new_used: Decimal
    reserved: bool


def get_credit_profile(db: Session, client_id: int) -> CreditProfile:
    row = db.execute(
        select(User.id, User.credit_limit, User.credit_used).where(User.id == client_id, User.role == UserRole.CLIENT)
    ).one_or_none()
    if row is None:
        raise ClientNotFound(client_id)
    credit_limit = to_money(row.credit_limit) if row.credit_limit is not None else None
    credit_used = max(ZERO, to_money(row.credit_used or 0))
    return CreditProfile(client_id=row.id, credit_limit=credit_limit, credit_used=credit_used)


def check_admission(profile: CreditProfile, amount: Decimal) -> None:
    if profile.unconstrained:
        return
    if amount > profile.available:
        raise CreditLimitExceeded(profile.client_id, amount, profile.available)


def reserve_credit(
    db: Session,
    client_id: int,
    amount: Decimal,
    *,
    policy: RetryPolicy | None = None,
) -> CreditReservation:
    """Add ``amount`` to ``credit_used`` if it fits under the limit, by conditional write."""
    policy = policy or credit_reservation_policy()
    amount = to_money(amount)
    profile = get_credit_profile(db, client_id)

    for attempt in policy.attempts():
        policy.sleep_before(attempt)
        if profile.unconstrained:
            return CreditReservation(client_id, amount, profile.credit_used, profile.credit_used, reserved=False)
        check_admission(profile, amount)

        new_used = (profile.credit_used + amount).quantize(CENT, rounding=ROUND_HALF_UP)
        result = db.execute(
            update(User)
            .where(
                User.id == client_id,
                User.credit_used == profile.credit_used,
                User.credit_limit == profile.credit_limit,
            )
            .values(credit_used=new_used, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(
                'Credit reserved',
                extra={'client_id': client_id, 'amount': amount, 'credit_used': new_used},
            )
            return CreditReservation(client_id, amount, profile.credit_used, new_used, reserved=True)

        logger.warning(
            'Credit ledger changed concurrently, re-reading',
            extra={'client_id': client_id, 'attempt': attempt},
        )
        profile = get_credit_profile(db, client_id)

    raise ConcurrentUpdateFailed('client credit', client_id, f'credit ledger kept changing after {policy.max_attempts} attempts')


def release_credit(db: Session, reservation: CreditReservation) -> None:
    """Undo a reservation, restoring the pre-reservation ``credit_used``."""
    if not reservation.reserved:
        return
    result = db.execute(
        update(User)
        .where(User.id == reservation.client_id, User.credit_used == reservation.new_used)
        .values(credit_used=reservation.previous_used, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.info(
            'Credit reservation released',
            extra={'client_id': reservation.client_id, 'credit_used': reservation.previous_used},
        )
        return

    # Another reservation landed in between; take back only our amount.
    logger.warning(
        'Credit ledger moved since reservation, releasing by amount',
        extra={'client_id': reservation.client_id, 'amount': reservation.amount},
    )
    db.execute(
        update(User)
        .where(User.id == reservation.client_id)
        .values(credit_used=User.credit_used - reservation.amount, updated_at=_now())
        .execution_options(synchronize_session=False)
    )


def adjust_credit_limit(
    db: Session,
    actor: Principal,
    *,
    client_id: int,
    adjustment_type: CreditAdjustmentType | str,
    amount,
    reason: str,
    ip: str | None = None,
) -> CreditLimitAdjustment:
    require_actor_role(actor, Role.ADMIN)

    try:
        kind = CreditAdjustmentType(str(getattr(adjustment_type, 'value', adjustment_type)).strip().upper())
    except ValueError as exc:
        raise InvalidCreditAdjustment('Invalid adjustment type. Use SET, INCREASE, or DECREASE') from exc
    try:
        adjustment_amount = to_money(amount)
    except ValueError as exc:
        raise InvalidCreditAdjustment('Adjustment amount must be a non-negative number') from exc
    if adjustment_amount < 0:
        raise InvalidCreditAdjustment('Adjustment amount must be a non-negative number')
    if kind in {CreditAdjustmentType.INCREASE, CreditAdjustmentType.DECREASE} and adjustment_amount == 0:
        raise InvalidCreditAdjustment('Increase/decrease amount must be greater than zero')
    clean_reason = (reason or '').strip()
    if len(clean_reason) < settings.credit_adjustment_min_reason_length:
        raise InvalidCreditAdjustment(
            f'Reason must be at least {settings.credit_adjustment_min_reason_length} characters'
        )

    profile = get_credit_profile(db, client_id)
    previous_limit = profile.credit_limit or ZERO
    if kind == CreditAdjustmentType.SET:
        new_limit = adjustment_amount
    elif kind == CreditAdjustmentType.INCREASE:
        new_limit = previous_limit + adjustment_amount
    else:
        if adjustment_amount > previous_limit:
            raise InvalidCreditAdjustment('Decrease amount exceeds current credit limit')
        new_limit = previous_limit - adjustment_amount

    result = db.execute(
        update(User)
        .where(User.id == client_id, User.credit_limit == profile.credit_limit)
        .values(credit_limit=new_limit, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateFailed('client credit', client_id, 'credit limit changed while adjusting')

    adjustment = CreditLimitAdjustment(
        client_id=client_id,
        admin_id=actor.id,
        adjustment_type=kind,
        adjustment_amount=adjustment_amount,
        change_amount=new_limit - previous_limit,
        previous_limit=previous_limit,
        new_limit=new_limit,
        reason=clean_reason,
        created_at=_now(),
    )
    db.add(adjustment)
    log_audit(
        db,
        actor_user_id=actor.id,
        action='CREDIT_LIMIT_ADJUSTED',
        entity_type='client',
        entity_id=client_id,
        ip=ip,
        metadata={
            'adjustment_type': kind.value,
            'previous_limit': str(previous_limit),
            'new_limit': str(new_limit),
        },
    )
    db.flush()
    return adjustment


def list_credit_adjustments(db: Session, client_id: int) -> list[CreditLimitAdjustment]:
    return db.execute(
        select(CreditLimitAdjustment)
        .where(CreditLimitAdjustment.client_id == client_id)
        .order_by(CreditLimitAdjustment.created_at.desc(), CreditLimitAdjustment.id.desc())
    ).scalars().all()
