from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from app.errors import ValidationError


class OfferPrice(BaseModel):
    model_config = ConfigDict(extra="allow")

    currency: str = Field(pattern="^[A-Z]{3}$")
    total: Decimal = Field(ge=0)
    grandTotal: Optional[Decimal] = None


class FlightOffer(BaseModel):
    """A provider flight offer, validated once where it enters the system.

    Only the fields the engine reasons about are typed; everything else the provider
    sent is kept as-is so the offer can be handed back for pricing and ordering.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    numberOfBookableSeats: int = Field(default=0, ge=0)
    itineraries: List[Dict[str, Any]] = Field(min_length=1)
    price: OfferPrice

    def to_provider(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def parse_offer(data: Any, *, field: str = "flightOffer") -> FlightOffer:
    if isinstance(data, FlightOffer):
        return data
    try:
        return FlightOffer.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed flight offer",
            details={"field": field, "errors": e.errors(include_url=False, include_context=False)},
        ) from e


class OfferVerifyRequest(BaseModel):
    flightOffer: Dict[str, Any]


class VerifiedOfferOut(BaseModel):
    flightOffer: Dict[str, Any]
    priceChanged: bool
    originalPrice: str
    newPrice: str
    currency: str
    seatsAvailable: bool
    expiration: datetime
