from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.models import AdminAuditLog


def log_audit(
    db: Session,
    *,
    actor_user_id: int | None,
    action: str,
    entity_type: str | None = None,
    entity_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AdminAuditLog(
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def list_audit_for_entity(db: Session, *, entity_type: str, entity_id: int) -> list[AdminAuditLog]:
    return db.execute(
        select(AdminAuditLog)
        .where(AdminAuditLog.entity_type == entity_type, AdminAuditLog.entity_id == entity_id)
        .order_by(AdminAuditLog.id.asc())
    ).scalars().all()
