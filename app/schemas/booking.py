from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

ISO_DATE = r"^\d{4}-\d{2}-\d{2}$"
EMAIL = r"^[^@\s]+@[^@\s]+$"  # plain check, allows .local and other dev domains

class PassengerIn(BaseModel):
    firstName: str = Field(min_length=2)
    lastName: str = Field(min_length=2)
    dateOfBirth: str = Field(pattern=ISO_DATE)
    gender: Literal["MALE", "FEMALE", "UNSPECIFIED"] = "UNSPECIFIED"
    email: Optional[str] = Field(default=None, pattern=EMAIL)
    phone: Optional[str] = None
    documentType: Optional[Literal["PASSPORT", "ID_CARD", "VISA"]] = None
    documentNumber: Optional[str] = None
    documentIssuingCountry: Optional[str] = Field(default=None, min_length=2, max_length=2)
    documentExpiryDate: Optional[str] = Field(default=None, pattern=ISO_DATE)

class BookingCreate(BaseModel):
    flightOfferId: str = Field(min_length=1)
    passengers: List[PassengerIn] = Field(min_length=1)
    contactEmail: str = Field(pattern=EMAIL)
    contactPhone: str = ""
    totalAmount: Decimal = Field(gt=0)  # the price the client was shown; must match the verified offer
    currency: str = Field(pattern="^[A-Z]{3}$")
    idempotencyKey: Optional[str] = Field(default=None, max_length=128)

class BookingOut(BaseModel):
    id: str
    bookingReference: str
    status: str
    totalAmount: str
    currency: str
    userId: Optional[str] = None
    failureReason: Optional[str] = None
    providerOrderId: Optional[str] = None
    eTicketUrl: Optional[str] = None
    expiresAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

class ETicketOut(BaseModel):
    bookingReference: str
    eTicketUrl: str

class ContactIn(BaseModel):
    emailAddress: str = Field(pattern=EMAIL)
    phone: str = ""

class FlightBookingCreate(BaseModel):
    flightOffer: dict
    travelers: List[PassengerIn] = Field(min_length=1)
    contact: ContactIn
