from decimal import Decimal
from sqlalchemy import String, DateTime, JSON, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class FlightBooking(Base):
    """Direct order placed by a registered user; the provider order exists before this row."""
    __tablename__ = "flight_bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    booking_reference: Mapped[str] = mapped_column(String(40), unique=True, index=True)  # provider record locator
    provider_order_id: Mapped[str] = mapped_column(String(120), unique=True)

    flight_offer_data: Mapped[dict] = mapped_column(JSON)
    passengers: Mapped[list] = mapped_column(JSON)
    contact_email: Mapped[str] = mapped_column(String(320))
    contact_phone: Mapped[str] = mapped_column(String(40), default="")

    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    booking_status: Mapped[str] = mapped_column(String(30), default="CONFIRMED")
    payment_status: Mapped[str] = mapped_column(String(20), default="COMPLETED")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
