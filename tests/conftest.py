import os

# must be set before app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PAYSTACK_WEBHOOK_SECRET", "")

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.session import Base
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.booking import Booking  # noqa: F401
from app.models.email_log import EmailLog  # noqa: F401
from app.models.flight_booking import FlightBooking  # noqa: F401
from app.models.payment import Payment  # noqa: F401
from app.models.user import User
from app.services.booking_service import BookingCache, create_booking
from app.services.kv_store import InMemoryKeyValueStore
from app.services.offer_service import verify_offer
from tests.doubles import PASSENGER


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def cache():
    return BookingCache(InMemoryKeyValueStore())


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def make_offer():
    """Provider flight offer dict (factories as fixtures)."""

    def _factory(offer_id: str = "OFR1", total: str = "500.00", currency: str = "GHS", seats: int = 9,
                 origin: str = "ACC", destination: str = "NBO", days_out: int = 45) -> dict:
        day = (date.today() + timedelta(days=days_out)).isoformat()
        return {
            "type": "flight-offer",
            "id": offer_id,
            "source": "GDS",
            "numberOfBookableSeats": seats,
            "itineraries": [{
                "duration": "PT6H",
                "segments": [{
                    "carrierCode": "KQ",
                    "number": "511",
                    "departure": {"iataCode": origin, "at": f"{day}T08:00:00"},
                    "arrival": {"iataCode": destination, "at": f"{day}T14:00:00"},
                }],
            }],
            "price": {"currency": currency, "total": total, "grandTotal": total},
        }

    return _factory


@pytest.fixture
def provider(make_offer):
    p = MagicMock()
    # by default the provider confirms the candidate unchanged
    p.price_offer.side_effect = lambda offer: dict(offer)
    p.create_order.return_value = {
        "id": "eJzTd9f3NjIJdjMGAAtXAmE=",
        "associatedRecords": [{"reference": "KXQ7ZP"}],
    }
    return p


@pytest.fixture
def gateway():
    g = MagicMock()
    g.initialize_transaction.side_effect = lambda **kw: {
        "authorization_url": f"https://checkout.paystack.com/{kw['reference']}",
        "access_code": "ac_" + kw["reference"],
        "reference": kw["reference"],
    }
    return g


@pytest.fixture
def verified(kv, provider, make_offer):
    """Verify an offer so a booking can be created from it."""

    def _verify(offer_id: str = "OFR1", total: str = "500.00", currency: str = "GHS", seats: int = 9):
        return verify_offer(kv, provider, offer_id, make_offer(offer_id, total, currency, seats))

    return _verify


@pytest.fixture
def make_booking(db, kv, cache, notifier, verified):
    def _factory(offer_id: str = "OFR1", total: str = "500.00", currency: str = "GHS",
                 user_id: str | None = None, idempotency_key: str | None = None) -> Booking:
        verified(offer_id, total, currency)
        return create_booking(
            db, kv, cache, notifier,
            offer_id=offer_id,
            passengers=[dict(PASSENGER)],
            total_amount=Decimal(total),
            currency=currency,
            contact_email="ama@example.com",
            user_id=user_id,
            idempotency_key=idempotency_key,
        )

    return _factory


@pytest.fixture
def make_user(db):
    def _factory(email: str = "kofi@example.com", is_guest: bool = False, role: str = "USER") -> User:
        u = User(
            id=f"user-{email}",
            email=email,
            full_name="Kofi Boateng",
            role=role,
            password_hash="x",
            is_guest=is_guest,
        )
        db.add(u)
        db.commit()
        return u

    return _factory
