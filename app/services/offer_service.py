from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict

from app.core.config import settings
from app.errors import UpstreamError, ValidationError, offer_expired
from app.schemas.offers import FlightOffer, parse_offer
from app.services.amadeus_client import ProviderError
from app.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


def verified_key(offer_id: str) -> str:
    return f"verified:{offer_id}"


@dataclass
class VerifiedOffer:
    offer: FlightOffer
    price_changed: bool
    seats_available: bool
    original_price: Decimal
    new_price: Decimal
    captured_at: datetime
    expiration: datetime

    @property
    def offer_id(self) -> str:
        return self.offer.id

    @property
    def total(self) -> Decimal:
        return self.offer.price.total

    @property
    def currency(self) -> str:
        return self.offer.price.currency


def _add_months(d: date, months: int) -> date:
    month = d.month - 1 + months
    year = d.year + month // 12
    month = month % 12 + 1
    # clamp to the last day of the target month
    for day in (d.day, 30, 29, 28):
        try:
            return date(year, month, day)
        except ValueError:
            continue
    raise ValueError(f"cannot add {months} months to {d}")


def validate_search_window(origin: str, destination: str, departure_date: date, today: date | None = None) -> None:
    """Reject searches the provider would refuse anyway, before spending a round-trip."""
    if origin.strip().upper() == destination.strip().upper():
        raise ValidationError(
            "Origin and destination cannot be the same",
            details={"field": "destination"},
        )
    today = today or datetime.now(timezone.utc).date()
    if departure_date < today:
        raise ValidationError("Departure date cannot be in the past", details={"field": "departureDate"})
    latest = _add_months(today, settings.BOOKING_MAX_MONTHS_AHEAD)
    if departure_date > latest:
        raise ValidationError(
            f"Departure date cannot be more than {settings.BOOKING_MAX_MONTHS_AHEAD} months in the future",
            details={"field": "departureDate", "latest": latest.isoformat()},
        )


def check_itinerary(offer: FlightOffer, today: date | None = None) -> None:
    """Apply the search window rules to the outbound leg of an offer."""
    segments = offer.itineraries[0].get("segments") or []
    if not segments:
        return
    departure = segments[0].get("departure") or {}
    arrival = segments[-1].get("arrival") or {}
    origin, destination, at = departure.get("iataCode"), arrival.get("iataCode"), departure.get("at")
    if not (origin and destination and at):
        return
    try:
        departure_date = datetime.fromisoformat(at).date()
    except (TypeError, ValueError) as e:
        raise ValidationError(
            "Malformed departure time in flight offer",
            details={"field": "flightOffer.itineraries.segments.departure.at"},
        ) from e
    validate_search_window(origin, destination, departure_date, today=today)


def verify_offer(kv: KeyValueStore, provider, offer_id: str, candidate: Any) -> VerifiedOffer:
    """Re-price the candidate with the provider and hold the result for booking.

    The provider's priced offer, not the candidate, is what gets stored.
    """
    offer = parse_offer(candidate)
    if offer.id != offer_id:
        raise ValidationError(
            "Offer id in path does not match the submitted offer",
            details={"field": "flightOffer.id", "expected": offer_id, "got": offer.id},
        )
    check_itinerary(offer)

    logger.info("verifying flight offer %s", offer_id)
    try:
        priced_raw = provider.price_offer(offer.to_provider())
    except ProviderError as e:
        logger.warning("offer %s verification failed: %s", offer_id, e)
        if e.expired:
            raise offer_expired(offer_id) from e
        raise UpstreamError(
            "Could not verify flight offer with the provider",
            code="OFFER_VERIFICATION_FAILED",
            details={"offerId": offer_id, "timeout": e.timeout},
        ) from e

    priced_raw = dict(priced_raw or {})
    # pricing responses do not always repeat the seat count
    priced_raw.setdefault("numberOfBookableSeats", offer.numberOfBookableSeats)
    priced_raw.setdefault("id", offer.id)
    try:
        priced = FlightOffer.model_validate(priced_raw)
    except ValueError as e:
        raise UpstreamError(
            "Provider returned a malformed priced offer",
            code="OFFER_VERIFICATION_FAILED",
            details={"offerId": offer_id},
        ) from e

    now = datetime.now(timezone.utc)
    ttl = settings.OFFER_VERIFY_TTL_SECONDS
    verified = VerifiedOffer(
        offer=priced,
        price_changed=priced.price.total != offer.price.total,
        seats_available=priced.numberOfBookableSeats >= 1,
        original_price=offer.price.total,
        new_price=priced.price.total,
        captured_at=now,
        expiration=now + timedelta(seconds=ttl),
    )
    kv.set(verified_key(offer_id), _snapshot(verified), ttl)

    if verified.price_changed:
        logger.info("offer %s price changed %s -> %s", offer_id, verified.original_price, verified.new_price)
    if not verified.seats_available:
        logger.info("offer %s has no bookable seats", offer_id)
    return verified


def _snapshot(v: VerifiedOffer) -> Dict[str, Any]:
    return {
        "offerId": v.offer_id,
        "offer": v.offer.to_provider(),
        "numberOfBookableSeats": v.offer.numberOfBookableSeats,
        "priceChanged": v.price_changed,
        "originalPrice": str(v.original_price),
        "capturedAt": v.captured_at.isoformat(),
    }


def get_verified_offer(kv: KeyValueStore, offer_id: str) -> VerifiedOffer:
    """Look up the held snapshot. Reading does not consume it; only the TTL does."""
    snap = kv.get(verified_key(offer_id))
    if not snap:
        raise offer_expired(offer_id)

    captured_at = datetime.fromisoformat(snap["capturedAt"])
    expiration = captured_at + timedelta(seconds=settings.OFFER_VERIFY_TTL_SECONDS)
    # the fallback store may outlive the hold window by a lazy-expiry tick
    if expiration <= datetime.now(timezone.utc):
        raise offer_expired(offer_id)

    offer = parse_offer(snap["offer"], field="verifiedOffer")
    return VerifiedOffer(
        offer=offer,
        price_changed=bool(snap.get("priceChanged")),
        seats_available=offer.numberOfBookableSeats >= 1,
        original_price=Decimal(snap.get("originalPrice") or offer.price.total),
        new_price=offer.price.total,
        captured_at=captured_at,
        expiration=expiration,
    )


def to_out(v: VerifiedOffer) -> dict:
    return {
        "flightOffer": v.offer.to_provider(),
        "priceChanged": v.price_changed,
        "originalPrice": str(v.original_price),
        "newPrice": str(v.new_price),
        "currency": v.currency,
        "seatsAvailable": v.seats_available,
        "expiration": v.expiration,
    }
