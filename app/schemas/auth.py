from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional

EMAIL = r"^[^@\s]+@[^@\s]+$"


class OtpRequest(BaseModel):
    email: str = Field(pattern=EMAIL)


class OtpIssued(BaseModel):
    expiresAt: datetime


class OtpVerifyRequest(BaseModel):
    email: str = Field(pattern=EMAIL)
    code: str = Field(pattern=r"^\d{6}$")
    fullName: Optional[str] = None  # register only


class OtpVerifyOut(BaseModel):
    outcome: str  # VERIFIED | INVALID | EXPIRED
    accessToken: Optional[str] = None
    userId: Optional[str] = None
