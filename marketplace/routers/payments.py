from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, get_current_principal, require_role
from marketplace.db import get_db
from marketplace.dependencies import PageParams, get_page_params
from marketplace.schemas import (
    ConfirmPaymentRequest,
    OrderOut,
    PaymentAuditOut,
    PaymentStatisticsOut,
    RejectPaymentRequest,
    SubmitReferenceRequest,
)
from marketplace.services.payment_workflow_service import (
    confirm_payment,
    get_audit_log,
    list_pending_payment_orders,
    payment_statistics,
    reject_payment,
    submit_payment_reference,
)

router = APIRouter(tags=['payments'])


@router.post('/orders/{order_id}/payment-reference', response_model=OrderOut)
def submit_reference(
    order_id: int,
    body: SubmitReferenceRequest,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    order = submit_payment_reference(db, order_id, principal, body.reference, body.notes)
    db.commit()
    return order


@router.post('/orders/{order_id}/payment/confirm', response_model=OrderOut)
def confirm(
    order_id: int,
    body: ConfirmPaymentRequest | None = None,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    body = body or ConfirmPaymentRequest()
    order = confirm_payment(db, order_id, principal, reference=body.reference, notes=body.notes)
    db.commit()
    return order


@router.post('/orders/{order_id}/payment/reject', response_model=OrderOut)
def reject(
    order_id: int,
    body: RejectPaymentRequest,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    order = reject_payment(db, order_id, principal, body.reason)
    db.commit()
    return order


@router.get('/orders/{order_id}/payment-audit', response_model=list[PaymentAuditOut])
def payment_audit(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return get_audit_log(db, order_id, principal)


@router.get('/payments/pending', response_model=list[OrderOut])
def pending_payments(
    _: Principal = Depends(require_role(Role.ADMIN)),
    paging: PageParams = Depends(get_page_params),
    db: Session = Depends(get_db),
):
    return list_pending_payment_orders(db, page=paging.page, page_size=paging.page_size)


@router.get('/payments/statistics', response_model=PaymentStatisticsOut)
def statistics(
    _: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    return PaymentStatisticsOut.model_validate(payment_statistics(db))
