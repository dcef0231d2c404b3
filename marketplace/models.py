from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys.
IdType = BigInteger().with_variant(Integer, 'sqlite')
Money = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


class UserRole(str, Enum):
    ADMIN = 'ADMIN'
    CLIENT = 'CLIENT'
    SUPPLIER = 'SUPPLIER'


class RfqStatus(str, Enum):
    OPEN = 'OPEN'
    QUOTED = 'QUOTED'
    CLOSED = 'CLOSED'
    CANCELLED = 'CANCELLED'


class QuoteStatus(str, Enum):
    PENDING_ADMIN = 'PENDING_ADMIN'
    SENT_TO_CLIENT = 'SENT_TO_CLIENT'
    ACCEPTED = 'ACCEPTED'
    REJECTED = 'REJECTED'


class OrderStatus(str, Enum):
    PENDING_ADMIN_CONFIRMATION = 'PENDING_ADMIN_CONFIRMATION'
    PENDING_PAYMENT = 'PENDING_PAYMENT'
    AWAITING_CONFIRMATION = 'AWAITING_CONFIRMATION'
    PAYMENT_CONFIRMED = 'PAYMENT_CONFIRMED'
    PROCESSING = 'PROCESSING'
    READY_FOR_PICKUP = 'READY_FOR_PICKUP'
    PICKUP_SCHEDULED = 'PICKUP_SCHEDULED'
    PICKED_UP = 'PICKED_UP'
    OUT_FOR_DELIVERY = 'OUT_FOR_DELIVERY'
    IN_TRANSIT = 'IN_TRANSIT'
    SHIPPED = 'SHIPPED'
    DELIVERED = 'DELIVERED'
    COMPLETED = 'COMPLETED'
    DISPUTED = 'DISPUTED'
    CANCELLED = 'CANCELLED'
    REFUNDED = 'REFUNDED'


class PaymentAuditAction(str, Enum):
    REFERENCE_SUBMITTED = 'REFERENCE_SUBMITTED'
    REFERENCE_RESUBMITTED = 'REFERENCE_RESUBMITTED'
    PAYMENT_CONFIRMED = 'PAYMENT_CONFIRMED'
    PAYMENT_REJECTED = 'PAYMENT_REJECTED'


class CreditAdjustmentType(str, Enum):
    SET = 'SET'
    INCREASE = 'INCREASE'
    DECREASE = 'DECREASE'


class User(Base):
    __tablename__ = 'users'
    __table_args__ = (
        CheckConstraint('credit_limit IS NULL OR credit_limit >= 0', name='users_credit_limit_non_negative_ck'),
        CheckConstraint('credit_used >= 0', name='users_credit_used_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    company_name: Mapped[str | None] = mapped_column(Text)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole, name='user_role'), nullable=False)
    credit_limit: Mapped[Decimal | None] = mapped_column(Money)
    credit_used: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Rfq(Base):
    __tablename__ = 'rfqs'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    client_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id'), nullable=False)
    title: Mapped[str | None] = mapped_column(Text)
    status: Mapped[RfqStatus] = mapped_column(
        SQLEnum(RfqStatus, name='rfq_status'), nullable=False, default=RfqStatus.OPEN, server_default='OPEN'
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Quote(Base):
    __tablename__ = 'quotes'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    rfq_id: Mapped[int] = mapped_column(IdType, ForeignKey('rfqs.id', ondelete='CASCADE'), nullable=False)
    supplier_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id'), nullable=False)
    supplier_price: Mapped[Decimal | None] = mapped_column(Money)
    margin_percent: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))
    final_price: Mapped[Decimal | None] = mapped_column(Money)
    status: Mapped[QuoteStatus] = mapped_column(
        SQLEnum(QuoteStatus, name='quote_status'),
        nullable=False,
        default=QuoteStatus.PENDING_ADMIN,
        server_default='PENDING_ADMIN',
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        CheckConstraint('amount > 0', name='orders_amount_positive_ck'),
        Index('ix_orders_payment_reference', 'payment_reference', unique=True),
        Index('ix_orders_quote_id', 'quote_id'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    quote_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('quotes.id'))
    client_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id'), nullable=False)
    supplier_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status'),
        nullable=False,
        default=OrderStatus.PENDING_ADMIN_CONFIRMATION,
        server_default='PENDING_ADMIN_CONFIRMATION',
    )
    payment_reference: Mapped[str | None] = mapped_column(Text)
    payment_notes: Mapped[str | None] = mapped_column(Text)
    payment_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_confirmed_by: Mapped[int | None] = mapped_column(IdType, ForeignKey('users.id'))
    payment_receipt_url: Mapped[str | None] = mapped_column(Text)
    admin_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    admin_verified_by: Mapped[int | None] = mapped_column(IdType, ForeignKey('users.id'))
    admin_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    items: Mapped[list | None] = mapped_column(JSON)
    shipment_details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PaymentAuditLog(Base):
    __tablename__ = 'payment_audit_logs'
    __table_args__ = (
        Index('ix_payment_audit_logs_order_created_at', 'order_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_id: Mapped[int] = mapped_column(IdType, ForeignKey('orders.id'), nullable=False)
    actor_user_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('users.id'))
    actor_role: Mapped[UserRole | None] = mapped_column(SQLEnum(UserRole, name='user_role'))
    action: Mapped[PaymentAuditAction] = mapped_column(
        SQLEnum(PaymentAuditAction, name='payment_audit_action'), nullable=False
    )
    from_status: Mapped[OrderStatus | None] = mapped_column(SQLEnum(OrderStatus, name='order_status'))
    to_status: Mapped[OrderStatus | None] = mapped_column(SQLEnum(OrderStatus, name='order_status'))
    payment_reference: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CreditLimitAdjustment(Base):
    __tablename__ = 'credit_limit_adjustments'
    __table_args__ = (
        CheckConstraint('adjustment_amount >= 0', name='credit_limit_adjustments_amount_non_negative_ck'),
        CheckConstraint('new_limit >= 0', name='credit_limit_adjustments_new_limit_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    client_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    admin_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id'), nullable=False)
    adjustment_type: Mapped[CreditAdjustmentType] = mapped_column(
        SQLEnum(CreditAdjustmentType, name='credit_adjustment_type'), nullable=False
    )
    adjustment_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    change_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    previous_limit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    new_limit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AdminAuditLog(Base):
    __tablename__ = 'admin_audit_log'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    actor_user_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('users.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(Text)
    entity_id: Mapped[int | None] = mapped_column(IdType)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[int] = mapped_column(IdType, ForeignKey('users.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
