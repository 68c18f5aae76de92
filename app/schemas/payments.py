from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional


class PaymentInitRequest(BaseModel):
    bookingId: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(pattern="^[A-Z]{3}$")
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    callbackUrl: Optional[str] = None
    paymentMethod: str = "paystack"


class PaymentInitOut(BaseModel):
    paymentId: str
    transactionId: str
    authorizationUrl: str
    accessCode: str = ""


class PaymentVerifyOut(BaseModel):
    paymentId: str
    transactionId: str
    bookingId: str
    status: str
    verified: bool


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)  # defaults to the full amount


class PaymentOut(BaseModel):
    id: str
    transactionId: str
    bookingId: str
    amount: str
    currency: str
    paymentMethod: str
    status: str
