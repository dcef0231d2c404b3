from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, assert_client_scope, require_role
from marketplace.db import get_db
from marketplace.dependencies import get_client_ip
from marketplace.schemas import CreditAdjustmentOut, CreditLimitRequest, CreditProfileOut
from marketplace.services.credit_service import adjust_credit_limit, get_credit_profile, list_credit_adjustments

router = APIRouter(prefix='/clients', tags=['clients'])


@router.get('/{client_id}/credit', response_model=CreditProfileOut)
def credit_profile(
    client_id: int,
    principal: Principal = Depends(require_role(Role.ADMIN, Role.CLIENT)),
    db: Session = Depends(get_db),
):
    assert_client_scope(principal, client_id)
    profile = get_credit_profile(db, client_id)
    return CreditProfileOut(
        client_id=profile.client_id,
        credit_limit=profile.credit_limit,
        credit_used=profile.credit_used,
        available=profile.available,
        unconstrained=profile.unconstrained,
    )


@router.post('/{client_id}/credit-limit', response_model=CreditAdjustmentOut)
def change_credit_limit(
    client_id: int,
    body: CreditLimitRequest,
    request: Request,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    adjustment = adjust_credit_limit(
        db,
        principal,
        client_id=client_id,
        adjustment_type=body.adjustment_type,
        amount=body.amount,
        reason=body.reason,
        ip=get_client_ip(request),
    )
    db.commit()
    return adjustment


@router.get('/{client_id}/credit-adjustments', response_model=list[CreditAdjustmentOut])
def credit_adjustments(
    client_id: int,
    _: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    return list_credit_adjustments(db, client_id)
