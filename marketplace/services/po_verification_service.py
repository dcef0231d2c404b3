from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_actor_role
from marketplace.logging_config import get_logger
from marketplace.models import Order, OrderStatus
from marketplace.services.audit_service import log_audit
from marketplace.services.order_update_service import apply_order_update, load_order

logger = get_logger('services.po_verification')


def verify_purchase_order(db: Session, order_id: int, actor: Principal, *, ip: str | None = None) -> Order:
    """Mark the client's purchase order as checked and release the order for payment."""
    require_actor_role(actor, Role.ADMIN)
    order = load_order(db, order_id)
    if order.admin_verified:
        return order

    fields = {
        'admin_verified': True,
        'admin_verified_by': actor.id,
        'admin_verified_at': datetime.now(tz=timezone.utc),
    }
    status = OrderStatus.PENDING_PAYMENT if order.status == OrderStatus.PENDING_ADMIN_CONFIRMATION else None
    result = apply_order_update(db, order_id, status=status, fields=fields, stop_if_reached=True)

    log_audit(
        db,
        actor_user_id=actor.id,
        action='PO_VERIFIED',
        entity_type='order',
        entity_id=order_id,
        ip=ip,
        metadata={'from_status': result.from_status.value, 'to_status': result.to_status.value},
    )
    logger.info(
        'Purchase order verified',
        extra={'order_id': order_id, 'status_changed': result.status_changed},
    )
    return result.order
