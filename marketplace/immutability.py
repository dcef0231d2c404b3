"""
ORM-level immutability for the payment audit trail.

Mapper listeners fire before UPDATE/DELETE of a ``PaymentAuditLog`` instance is
flushed and abort the flush with ``AuditLogImmutable``. Bulk statements issued
with ``sqlalchemy.update``/``delete`` bypass mapper events; no service issues
those against ``payment_audit_logs``.
"""

from __future__ import annotations

from sqlalchemy import event

from marketplace.errors import AuditLogImmutable
from marketplace.models import PaymentAuditLog


def _block_update(mapper, connection, target: PaymentAuditLog) -> None:
    raise AuditLogImmutable(target.id, 'updated')


def _block_delete(mapper, connection, target: PaymentAuditLog) -> None:
    raise AuditLogImmutable(target.id, 'deleted')


_LISTENERS = (
    ('before_update', _block_update),
    ('before_delete', _block_delete),
)


def register_immutability_listeners() -> None:
    for name, fn in _LISTENERS:
        if not event.contains(PaymentAuditLog, name, fn):
            event.listen(PaymentAuditLog, name, fn)


def unregister_immutability_listeners() -> None:
    for name, fn in _LISTENERS:
        if event.contains(PaymentAuditLog, name, fn):
            event.remove(PaymentAuditLog, name, fn)
