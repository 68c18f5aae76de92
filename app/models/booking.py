from decimal import Decimal
from sqlalchemy import String, DateTime, JSON, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_reference: Mapped[str] = mapped_column(String(20), unique=True, index=True)  # JT + 6 digits

    user_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)  # null for guest checkout

    flight_offer_id: Mapped[str] = mapped_column(String(64), index=True)
    flight_offer_data: Mapped[dict] = mapped_column(JSON)  # snapshot of the verified offer, never rewritten
    passenger_details: Mapped[list] = mapped_column(JSON)
    contact_email: Mapped[str] = mapped_column(String(320))
    contact_phone: Mapped[str] = mapped_column(String(40), default="")

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    status: Mapped[str] = mapped_column(String(30), default="PENDING", index=True)  # see app.domain.booking_state_machine
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    provider_order_id: Mapped[str | None] = mapped_column(String(120), nullable=True, unique=True)
    provider_order_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    e_ticket_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # client-supplied token; a resubmission with the same key returns this booking
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
