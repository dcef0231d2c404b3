from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, assert_client_scope, get_current_principal, require_role
from marketplace.db import get_db
from marketplace.dependencies import PageParams, get_client_ip, get_page_params
from marketplace.errors import Unauthorized
from marketplace.models import Order
from marketplace.schemas import OrderFieldsRequest, OrderOut, StatusChangeRequest
from marketplace.services.order_status_service import allowed_transitions
from marketplace.services.order_update_service import load_order, update_order_fields, update_order_status
from marketplace.services.payment_workflow_service import list_client_orders
from marketplace.services.po_verification_service import verify_purchase_order

router = APIRouter(prefix='/orders', tags=['orders'])


def _assert_supplier_scope(principal: Principal, order: Order) -> None:
    if principal.role == Role.SUPPLIER and order.supplier_id != principal.id:
        raise Unauthorized('Suppliers can only view their own orders', (Role.SUPPLIER.value,))


@router.get('', response_model=list[OrderOut])
def my_orders(
    principal: Principal = Depends(require_role(Role.CLIENT)),
    paging: PageParams = Depends(get_page_params),
    db: Session = Depends(get_db),
):
    return list_client_orders(db, principal.id, page=paging.page, page_size=paging.page_size)


@router.get('/{order_id}', response_model=OrderOut)
def order_detail(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    order = load_order(db, order_id)
    assert_client_scope(principal, order.client_id)
    _assert_supplier_scope(principal, order)
    return order


@router.get('/{order_id}/transitions')
def order_transitions(
    order_id: int,
    principal: Principal = Depends(require_role(Role.ADMIN, Role.SUPPLIER)),
    db: Session = Depends(get_db),
) -> dict:
    order = load_order(db, order_id)
    _assert_supplier_scope(principal, order)
    return {
        'status': order.status.value,
        'allowed': [status.value for status in allowed_transitions(order.status)],
    }


@router.patch('/{order_id}/status', response_model=OrderOut)
def change_status(
    order_id: int,
    body: StatusChangeRequest,
    request: Request,
    principal: Principal = Depends(require_role(Role.ADMIN, Role.SUPPLIER)),
    db: Session = Depends(get_db),
):
    order = update_order_status(db, order_id, body.status, principal, ip=get_client_ip(request))
    db.commit()
    return order


@router.patch('/{order_id}', response_model=OrderOut)
def edit_order(
    order_id: int,
    body: OrderFieldsRequest,
    request: Request,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    try:
        order = update_order_fields(db, order_id, principal, body.fields(), ip=get_client_ip(request))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return order


@router.post('/{order_id}/verify-po', response_model=OrderOut)
def verify_po(
    order_id: int,
    request: Request,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    order = verify_purchase_order(db, order_id, principal, ip=get_client_ip(request))
    db.commit()
    return order
