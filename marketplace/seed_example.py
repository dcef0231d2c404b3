from decimal import Decimal

from sqlalchemy import select

from marketplace.db import SessionLocal, engine
from marketplace.models import Base, Quote, QuoteStatus, Rfq, RfqStatus, User, UserRole
from marketplace.security.passwords import hash_password


def _ensure_user(db, username: str, password: str, role: UserRole, **extra) -> User:
    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if not user:
        user = User(username=username, password_hash=hash_password(password), role=role, active=True, **extra)
        db.add(user)
        db.flush()
    return user


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        _ensure_user(db, 'admin', 'adminpass', UserRole.ADMIN, company_name='Marketplace Ops')
        client = _ensure_user(
            db,
            'client1',
            'clientpass',
            UserRole.CLIENT,
            company_name='Acme Facilities',
            credit_limit=Decimal('10000.00'),
            credit_used=Decimal('0.00'),
        )
        supplier = _ensure_user(db, 'supplier1', 'supplierpass', UserRole.SUPPLIER, company_name='Bolt Supply Co')

        rfq = db.execute(select(Rfq).where(Rfq.client_id == client.id)).scalars().first()
        if not rfq:
            rfq = Rfq(client_id=client.id, title='Office chairs x40', status=RfqStatus.QUOTED)
            db.add(rfq)
            db.flush()

        quote = db.execute(select(Quote).where(Quote.rfq_id == rfq.id)).scalars().first()
        if not quote:
            db.add(
                Quote(
                    rfq_id=rfq.id,
                    supplier_id=supplier.id,
                    supplier_price=Decimal('4000.00'),
                    margin_percent=Decimal('12.50'),
                    final_price=Decimal('4500.00'),
                    status=QuoteStatus.SENT_TO_CLIENT,
                )
            )

        db.commit()


if __name__ == '__main__':
    seed()
