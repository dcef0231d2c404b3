from __future__ import annotations

from decimal import Decimal
from itertools import count

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.auth import Principal, Role
from marketplace.models import Base, Order, OrderStatus, Quote, QuoteStatus, Rfq, RfqStatus, User, UserRole
from marketplace.services.order_update_service import forget_supported_columns

_usernames = count(1)


def make_engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # pysqlite starts transactions lazily, which breaks SAVEPOINT; take over BEGIN.
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN')

    Base.metadata.create_all(engine)
    forget_supported_columns()
    return engine


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def make_user(
    db: Session,
    role: UserRole,
    *,
    credit_limit: Decimal | None = None,
    credit_used: Decimal = Decimal('0.00'),
    password_hash: str = 'not-a-real-hash',
    active: bool = True,
) -> User:
    user = User(
        username=f'{role.value.lower()}-{next(_usernames)}',
        password_hash=password_hash,
        role=role,
        credit_limit=credit_limit,
        credit_used=credit_used,
        active=active,
    )
    db.add(user)
    db.flush()
    return user


def principal_for(user: User) -> Principal:
    return Principal(id=user.id, username=user.username, role=Role(user.role.value), active=user.active)


def make_rfq(db: Session, client: User) -> Rfq:
    rfq = Rfq(client_id=client.id, title='Pallet racking', status=RfqStatus.QUOTED)
    db.add(rfq)
    db.flush()
    return rfq


def make_quote(
    db: Session,
    rfq: Rfq,
    supplier: User,
    *,
    final_price: Decimal | None = Decimal('1000.00'),
    supplier_price: Decimal | None = Decimal('900.00'),
    status: QuoteStatus = QuoteStatus.SENT_TO_CLIENT,
) -> Quote:
    quote = Quote(
        rfq_id=rfq.id,
        supplier_id=supplier.id,
        supplier_price=supplier_price,
        final_price=final_price,
        status=status,
    )
    db.add(quote)
    db.flush()
    return quote


def make_order(
    db: Session,
    client: User,
    supplier: User,
    *,
    amount: Decimal = Decimal('1000.00'),
    status: OrderStatus = OrderStatus.PENDING_PAYMENT,
    payment_reference: str | None = None,
    quote: Quote | None = None,
) -> Order:
    order = Order(
        quote_id=quote.id if quote else None,
        client_id=client.id,
        supplier_id=supplier.id,
        amount=amount,
        status=status,
        payment_reference=payment_reference,
    )
    db.add(order)
    db.flush()
    return order


class Marketplace:
    """A client, a supplier and an admin in a fresh in-memory database."""

    def __init__(self, *, credit_limit: Decimal | None = Decimal('50000.00'), credit_used: Decimal = Decimal('0.00')):
        self.engine = make_engine()
        self.session_factory = make_session_factory(self.engine)
        self.db = self.session_factory()
        self.admin = make_user(self.db, UserRole.ADMIN)
        self.client = make_user(self.db, UserRole.CLIENT, credit_limit=credit_limit, credit_used=credit_used)
        self.supplier = make_user(self.db, UserRole.SUPPLIER)
        self.db.commit()
        self.admin_actor = principal_for(self.admin)
        self.client_actor = principal_for(self.client)
        self.supplier_actor = principal_for(self.supplier)

    def close(self) -> None:
        self.db.close()
        self.engine.dispose()
