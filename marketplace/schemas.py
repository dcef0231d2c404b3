"""Request and response bodies for the JSON API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models import CreditAdjustmentType, OrderStatus, PaymentAuditAction, QuoteStatus, UserRole


class LoginRequest(BaseModel):
    username: str
    password: str


class PrincipalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    role: UserRole


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quote_id: int | None
    client_id: int
    supplier_id: int
    amount: Decimal
    status: OrderStatus
    payment_reference: str | None = None
    payment_notes: str | None = None
    payment_submitted_at: datetime | None = None
    payment_confirmed_at: datetime | None = None
    payment_confirmed_by: int | None = None
    admin_verified: bool = False
    admin_verified_by: int | None = None
    admin_verified_at: datetime | None = None
    items: list | None = None
    shipment_details: dict | None = None
    created_at: datetime
    updated_at: datetime


class QuoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rfq_id: int
    supplier_id: int
    final_price: Decimal | None
    status: QuoteStatus


class AcceptQuoteOut(BaseModel):
    quote: QuoteOut
    order: OrderOut
    created: bool


class StatusChangeRequest(BaseModel):
    status: OrderStatus


class OrderFieldsRequest(BaseModel):
    model_config = ConfigDict(extra='allow')

    def fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SubmitReferenceRequest(BaseModel):
    reference: str
    notes: str | None = None


class ConfirmPaymentRequest(BaseModel):
    reference: str | None = None
    notes: str | None = None


class RejectPaymentRequest(BaseModel):
    reason: str


class PaymentAuditOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    actor_user_id: int | None
    actor_role: UserRole | None
    action: PaymentAuditAction
    from_status: OrderStatus | None
    to_status: OrderStatus | None
    payment_reference: str | None
    notes: str | None
    metadata: dict = Field(default_factory=dict, validation_alias='meta')
    created_at: datetime


class PaymentBucketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    count: int
    amount: Decimal


class PaymentStatisticsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pending_payment: PaymentBucketOut
    paid: PaymentBucketOut
    total: PaymentBucketOut


class CreditLimitRequest(BaseModel):
    adjustment_type: CreditAdjustmentType
    amount: Decimal
    reason: str


class CreditAdjustmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    client_id: int
    admin_id: int
    adjustment_type: CreditAdjustmentType
    adjustment_amount: Decimal
    change_amount: Decimal
    previous_limit: Decimal
    new_limit: Decimal
    reason: str
    created_at: datetime


class CreditProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    client_id: int
    credit_limit: Decimal | None
    credit_used: Decimal
    available: Decimal | None
    unconstrained: bool
