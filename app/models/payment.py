from decimal import Decimal
from sqlalchemy import String, DateTime, JSON, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(20), unique=True, index=True)  # PAYM-XXXXXXXX, sent to the gateway as reference
    booking_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_method: Mapped[str] = mapped_column(String(40), default="paystack")

    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)  # PENDING, COMPLETED, FAILED, REFUNDED
    payment_data: Mapped[dict] = mapped_column(JSON, default=dict)  # merged into, never replaced

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
