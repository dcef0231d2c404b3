from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_role
from marketplace.db import get_db
from marketplace.schemas import AcceptQuoteOut, OrderOut, QuoteOut
from marketplace.services.quote_acceptance_service import accept_quote

router = APIRouter(prefix='/quotes', tags=['quotes'])


@router.post('/{quote_id}/accept', response_model=AcceptQuoteOut)
def accept(
    quote_id: int,
    principal: Principal = Depends(require_role(Role.CLIENT, Role.ADMIN)),
    db: Session = Depends(get_db),
) -> AcceptQuoteOut:
    accepted = accept_quote(db, quote_id, actor=principal)
    db.commit()
    return AcceptQuoteOut(
        quote=QuoteOut.model_validate(accepted.quote),
        order=OrderOut.model_validate(accepted.order),
        created=accepted.created,
    )
