"""
Quote acceptance: the only path that creates an order.

Acceptance reserves client credit and creates the order as two separate
writes, so it runs as a saga: if the order insert (or the conditional flip of
the quote to ACCEPTED) fails after credit was reserved, the reservation is
released before ``OrderCreationFailed`` reaches the caller. Re-accepting a
quote that already produced an order returns that order and reserves nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from marketplace.auth import Principal, Role, assert_client_scope, require_actor_role
from marketplace.errors import InvalidQuoteAmount, OrderCreationFailed, QuoteNotAcceptable, QuoteNotFound
from marketplace.logging_config import get_logger
from marketplace.models import Order, Quote, QuoteStatus, Rfq, RfqStatus
from marketplace.services.audit_service import log_audit
from marketplace.services.credit_service import (
    check_admission,
    get_credit_profile,
    release_credit,
    reserve_credit,
    to_money,
)
from marketplace.services.order_status_service import INITIAL_ORDER_STATUS
from marketplace.services.saga import SagaStep, run_saga

logger = get_logger('services.quote_acceptance')

OPEN_QUOTE_STATUSES = (QuoteStatus.PENDING_ADMIN, QuoteStatus.SENT_TO_CLIENT)


@dataclass(frozen=True)
class AcceptedQuote:
    quote: Quote
    order: Order
    created: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _load_quote(db: Session, quote_id: int) -> Quote:
    quote = db.execute(
        select(Quote).where(Quote.id == quote_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if quote is None:
        raise QuoteNotFound(quote_id)
    return quote


def existing_order_for_quote(db: Session, quote_id: int) -> Order | None:
    return db.execute(
        select(Order)
        .where(Order.quote_id == quote_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def quote_price(quote: Quote) -> Decimal:
    raw = quote.final_price if quote.final_price is not None else quote.supplier_price
    if raw is None:
        raise InvalidQuoteAmount(quote.id, raw)
    try:
        amount = to_money(raw)
    except ValueError as exc:
        raise InvalidQuoteAmount(quote.id, raw) from exc
    if amount <= 0:
        raise InvalidQuoteAmount(quote.id, raw)
    return amount


def _sibling_accepted(db: Session, quote: Quote) -> bool:
    return db.execute(
        select(Quote.id)
        .where(Quote.rfq_id == quote.rfq_id, Quote.id != quote.id, Quote.status == QuoteStatus.ACCEPTED)
        .limit(1)
    ).first() is not None


def _insert_order(db: Session, quote: Quote, client_id: int, amount: Decimal) -> Order:
    now = _now()
    order = Order(
        quote_id=quote.id,
        client_id=client_id,
        supplier_id=quote.supplier_id,
        amount=amount,
        status=INITIAL_ORDER_STATUS,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()
    return order


def _mark_quote_accepted(db: Session, quote: Quote) -> bool:
    sibling = aliased(Quote)
    result = db.execute(
        update(Quote)
        .where(
            Quote.id == quote.id,
            Quote.status.in_(OPEN_QUOTE_STATUSES),
            ~exists().where(
                sibling.rfq_id == quote.rfq_id,
                sibling.id != quote.id,
                sibling.status == QuoteStatus.ACCEPTED,
            ),
        )
        .values(status=QuoteStatus.ACCEPTED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _create_order(db: Session, quote: Quote, client_id: int, amount: Decimal) -> Order:
    try:
        with db.begin_nested():
            order = _insert_order(db, quote, client_id, amount)
            if not _mark_quote_accepted(db, quote):
                raise QuoteNotAcceptable(quote.id, 'quote was resolved concurrently')
    except QuoteNotAcceptable as exc:
        raise OrderCreationFailed(quote.id, exc.reason) from exc
    except SQLAlchemyError as exc:
        logger.error('Order insert failed', extra={'quote_id': quote.id, 'error': str(exc)})
        raise OrderCreationFailed(quote.id, str(exc)) from exc
    return order


def _reject_sibling_quotes(db: Session, quote: Quote) -> None:
    try:
        with db.begin_nested():
            db.execute(
                update(Quote)
                .where(
                    Quote.rfq_id == quote.rfq_id,
                    Quote.id != quote.id,
                    Quote.status.in_(OPEN_QUOTE_STATUSES),
                )
                .values(status=QuoteStatus.REJECTED)
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as exc:
        logger.warning(
            'Could not reject other quotes for RFQ',
            extra={'quote_id': quote.id, 'rfq_id': quote.rfq_id, 'error': str(exc)},
        )


def _close_rfq(db: Session, rfq_id: int) -> None:
    try:
        with db.begin_nested():
            db.execute(
                update(Rfq)
                .where(Rfq.id == rfq_id)
                .values(status=RfqStatus.CLOSED)
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as exc:
        logger.warning('Could not close RFQ', extra={'rfq_id': rfq_id, 'error': str(exc)})


def accept_quote(db: Session, quote_id: int, actor: Principal | None = None) -> AcceptedQuote:
    quote = _load_quote(db, quote_id)
    rfq = db.get(Rfq, quote.rfq_id)
    if rfq is None:
        raise QuoteNotAcceptable(quote_id, 'RFQ not found')
    if actor is not None:
        require_actor_role(actor, Role.CLIENT, Role.ADMIN)
        assert_client_scope(actor, rfq.client_id)

    existing = existing_order_for_quote(db, quote_id)
    if existing is not None:
        if quote.status != QuoteStatus.ACCEPTED:
            _mark_quote_accepted(db, quote)
        logger.info('Quote already accepted, returning existing order', extra={'quote_id': quote_id, 'order_id': existing.id})
        return AcceptedQuote(quote=_load_quote(db, quote_id), order=existing, created=False)

    if quote.status == QuoteStatus.REJECTED:
        raise QuoteNotAcceptable(quote_id, 'quote was rejected')
    if _sibling_accepted(db, quote):
        raise QuoteNotAcceptable(quote_id, 'another quote for this RFQ was already accepted')

    amount = quote_price(quote)
    check_admission(get_credit_profile(db, rfq.client_id), amount)

    try:
        reservation, order = run_saga(
            [
                SagaStep(
                    'reserve_credit',
                    lambda: reserve_credit(db, rfq.client_id, amount),
                    lambda result: release_credit(db, result),
                ),
                SagaStep('create_order', lambda: _create_order(db, quote, rfq.client_id, amount)),
            ]
        )
    except OrderCreationFailed as exc:
        if not isinstance(exc.__cause__, QuoteNotAcceptable):
            raise
        # A concurrent acceptance of this quote may have committed its order after our first lookup.
        winner = existing_order_for_quote(db, quote_id)
        if winner is None:
            raise
        logger.info(
            'Quote accepted concurrently, returning existing order',
            extra={'quote_id': quote_id, 'order_id': winner.id},
        )
        return AcceptedQuote(quote=_load_quote(db, quote_id), order=winner, created=False)

    _reject_sibling_quotes(db, quote)
    _close_rfq(db, rfq.id)
    if actor is not None:
        log_audit(
            db,
            actor_user_id=actor.id,
            action='QUOTE_ACCEPTED',
            entity_type='quote',
            entity_id=quote_id,
            metadata={'order_id': order.id, 'amount': str(amount), 'credit_reserved': reservation.reserved},
        )
    logger.info('Quote accepted', extra={'quote_id': quote_id, 'order_id': order.id, 'amount': amount})
    return AcceptedQuote(quote=_load_quote(db, quote_id), order=order, created=True)
