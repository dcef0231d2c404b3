"""
Typed errors raised by the order lifecycle and payment reconciliation services.

Every error carries a stable machine-readable ``code`` and a human-readable
reason. Callers catch by type; the HTTP layer serializes ``code`` and message
and leaves localization to the client.

    MarketplaceError
    +-- QuoteNotFound              QUOTE_NOT_FOUND
    +-- QuoteNotAcceptable         QUOTE_NOT_ACCEPTABLE
    +-- InvalidQuoteAmount         INVALID_QUOTE_AMOUNT
    +-- CreditLimitExceeded        CREDIT_LIMIT_EXCEEDED
    +-- OrderCreationFailed        ORDER_CREATION_FAILED
    +-- OrderNotFound              ORDER_NOT_FOUND
    +-- ClientNotFound             CLIENT_NOT_FOUND
    +-- InvalidTransition          INVALID_TRANSITION
    +-- ConcurrentUpdateFailed     CONCURRENT_UPDATE_FAILED
    +-- Unauthorized               UNAUTHORIZED
    +-- DuplicateReference         DUPLICATE_REFERENCE
    +-- EmptyReference             EMPTY_REFERENCE
    +-- EmptyReason                EMPTY_REASON
    +-- ImmutableField             IMMUTABLE_FIELD
    +-- InvalidCreditAdjustment    INVALID_CREDIT_ADJUSTMENT
    +-- AuditLogImmutable          AUDIT_LOG_IMMUTABLE
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class MarketplaceError(Exception):
    """Base class for all order engine errors."""

    code: str = 'MARKETPLACE_ERROR'

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

    def to_dict(self) -> dict[str, Any]:
        return {'code': self.code, 'message': self.reason}


class QuoteNotFound(MarketplaceError):
    code = 'QUOTE_NOT_FOUND'

    def __init__(self, quote_id: int):
        self.quote_id = quote_id
        super().__init__(f'Quote {quote_id} not found')


class QuoteNotAcceptable(MarketplaceError):
    code = 'QUOTE_NOT_ACCEPTABLE'

    def __init__(self, quote_id: int, reason: str):
        self.quote_id = quote_id
        super().__init__(f'Quote {quote_id} cannot be accepted: {reason}')


class InvalidQuoteAmount(MarketplaceError):
    code = 'INVALID_QUOTE_AMOUNT'

    def __init__(self, quote_id: int, amount: Any):
        self.quote_id = quote_id
        self.amount = amount
        super().__init__(f'Quote {quote_id} has an invalid amount: {amount}')


class CreditLimitExceeded(MarketplaceError):
    code = 'CREDIT_LIMIT_EXCEEDED'

    def __init__(self, client_id: int, requested: Decimal, available: Decimal):
        self.client_id = client_id
        self.requested = requested
        self.available = available
        super().__init__(f'Insufficient credit: requested {requested}, available {available}')


class OrderCreationFailed(MarketplaceError):
    code = 'ORDER_CREATION_FAILED'

    def __init__(self, quote_id: int, detail: str):
        self.quote_id = quote_id
        super().__init__(f'Failed to create order for quote {quote_id}: {detail}')


class OrderNotFound(MarketplaceError):
    code = 'ORDER_NOT_FOUND'

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f'Order {order_id} not found')


class ClientNotFound(MarketplaceError):
    code = 'CLIENT_NOT_FOUND'

    def __init__(self, client_id: int):
        self.client_id = client_id
        super().__init__(f'Client {client_id} not found')


class InvalidTransition(MarketplaceError):
    code = 'INVALID_TRANSITION'

    def __init__(self, from_status: Any, to_status: Any, detail: str | None = None):
        self.from_status = getattr(from_status, 'value', from_status)
        self.to_status = getattr(to_status, 'value', to_status)
        message = f'Invalid order status transition: {self.from_status} -> {self.to_status}'
        if detail:
            message = f'{message} ({detail})'
        super().__init__(message)


class ConcurrentUpdateFailed(MarketplaceError):
    code = 'CONCURRENT_UPDATE_FAILED'

    def __init__(self, entity: str, entity_id: int, detail: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f'Update of {entity} {entity_id} did not apply: {detail}')


class Unauthorized(MarketplaceError):
    code = 'UNAUTHORIZED'

    def __init__(self, reason: str, required_roles: tuple[str, ...] = ()):
        self.required_roles = required_roles
        super().__init__(reason)


class DuplicateReference(MarketplaceError):
    code = 'DUPLICATE_REFERENCE'

    def __init__(self, payment_reference: str):
        self.payment_reference = payment_reference
        super().__init__('This payment reference has already been used on another order')


class EmptyReference(MarketplaceError):
    code = 'EMPTY_REFERENCE'

    def __init__(self):
        super().__init__('Payment reference is required')


class EmptyReason(MarketplaceError):
    code = 'EMPTY_REASON'

    def __init__(self):
        super().__init__('Rejection reason is required')


class ImmutableField(MarketplaceError):
    code = 'IMMUTABLE_FIELD'

    def __init__(self, field: str):
        self.field = field
        super().__init__(f'Order field {field} cannot be changed through a generic update')


class InvalidCreditAdjustment(MarketplaceError):
    code = 'INVALID_CREDIT_ADJUSTMENT'


class AuditLogImmutable(MarketplaceError):
    code = 'AUDIT_LOG_IMMUTABLE'

    def __init__(self, entry_id: int | None, operation: str):
        self.entry_id = entry_id
        self.operation = operation
        super().__init__(f'Payment audit log entry {entry_id} cannot be {operation}')
