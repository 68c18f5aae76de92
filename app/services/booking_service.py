import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.booking_state_machine import BookingStateTransitionError, BookingStatus, validate_transition
from app.errors import ConflictError, NotFoundError, UpstreamError, price_changed, seats_unavailable
from app.models.booking import Booking
from app.models.flight_booking import FlightBooking
from app.models.user import User
from app.schemas.offers import parse_offer
from app.services.amadeus_client import ProviderError
from app.services.audit_service import alert_reconciliation, log_audit
from app.services.kv_store import KeyValueStore
from app.services.offer_service import check_itinerary, get_verified_offer
from app.services.otp_service import normalize_email
from app.services.ticket_service import render_eticket_pdf_bytes, store_eticket_pdf

logger = logging.getLogger(__name__)


def make_booking_ref() -> str:
    return "JT" + str(random.randint(100000, 999999))


def booking_to_dict(b: Booking) -> dict:
    return {
        "id": b.id,
        "bookingReference": b.booking_reference,
        "status": b.status,
        "totalAmount": str(b.total_amount),
        "currency": b.currency,
        "userId": b.user_id,
        "failureReason": b.failure_reason,
        "providerOrderId": b.provider_order_id,
        "eTicketUrl": b.e_ticket_url,
        "expiresAt": b.expires_at.isoformat() if b.expires_at else None,
        "createdAt": b.created_at.isoformat() if b.created_at else None,
        "updatedAt": b.updated_at.isoformat() if b.updated_at else None,
    }


class BookingCache:
    """Read cache for booking views, addressable by id and by reference."""

    def __init__(self, store: KeyValueStore, ttl: int | None = None):
        self.store = store
        self.ttl = ttl or settings.BOOKING_CACHE_TTL_SECONDS

    @staticmethod
    def id_key(booking_id: str) -> str:
        return f"booking:{booking_id}"

    @staticmethod
    def ref_key(reference: str) -> str:
        return f"booking_ref:{reference}"

    def by_id(self, booking_id: str) -> dict | None:
        return self.store.get(self.id_key(booking_id))

    def by_reference(self, reference: str) -> dict | None:
        return self.store.get(self.ref_key(reference))

    def refresh(self, booking: Booking) -> None:
        """Call after the store write commits: drop both keys, then repopulate them."""
        keys = (self.id_key(booking.id), self.ref_key(booking.booking_reference))
        for k in keys:
            self.store.delete(k)
        view = booking_to_dict(booking)
        for k in keys:
            self.store.set(k, view, self.ttl)


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def is_hold_expired(booking: Booking, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return booking.expires_at is not None and _as_utc(booking.expires_at) <= now


def _by_idempotency_key(db: Session, key: str) -> Booking | None:
    return db.execute(select(Booking).where(Booking.idempotency_key == key)).scalar_one_or_none()


def _replay(existing: Booking, user_id: str | None) -> Booking:
    if existing.user_id and existing.user_id != user_id:
        raise ConflictError(
            "Idempotency key already used for another booking",
            code="IDEMPOTENCY_KEY_REUSED",
        )
    logger.info("booking request replayed for %s", existing.booking_reference)
    return existing


def create_booking(db: Session, kv: KeyValueStore, cache: BookingCache, notifier, *,
                   offer_id: str, passengers: list[dict], total_amount: Decimal, currency: str,
                   contact_email: str = "", contact_phone: str = "",
                   user_id: str | None = None, idempotency_key: str | None = None) -> Booking:
    if idempotency_key:
        existing = _by_idempotency_key(db, idempotency_key)
        if existing:
            return _replay(existing, user_id)

    verified = get_verified_offer(kv, offer_id)
    if not verified.seats_available:
        raise seats_unavailable(offer_id)
    if Decimal(total_amount) != verified.total or currency != verified.currency:
        raise price_changed(total_amount, verified.total, verified.currency)

    lead = passengers[0]
    contact_email = contact_email or lead.get("email") or ""
    contact_phone = contact_phone or lead.get("phone") or ""

    # booking_reference must be unique
    for _ in range(10):
        ref = make_booking_ref()
        exists = db.query(Booking.id).filter(Booking.booking_reference == ref).first()
        if not exists:
            break
    else:
        raise RuntimeError("could not allocate booking reference")

    booking = Booking(
        id=str(uuid.uuid4()),
        booking_reference=ref,
        user_id=user_id,
        flight_offer_id=offer_id,
        flight_offer_data=verified.offer.to_provider(),
        passenger_details=passengers,
        contact_email=contact_email,
        contact_phone=contact_phone,
        total_amount=verified.total,
        currency=verified.currency,
        status=BookingStatus.PENDING.value,
        idempotency_key=idempotency_key,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=settings.BOOKING_HOLD_MINUTES),
    )
    db.add(booking)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # a concurrent submission with the same key won the insert
        existing = _by_idempotency_key(db, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        return _replay(existing, user_id)
    db.refresh(booking)

    logger.info("booking %s created for offer %s (%s %s)", ref, offer_id, booking.total_amount, booking.currency)
    cache.refresh(booking)
    notifier.booking_created(booking)
    return booking


def get_booking_record(db: Session, booking_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found", details={"bookingId": booking_id})
    return booking


def get_booking(db: Session, cache: BookingCache, booking_id: str) -> dict:
    cached = cache.by_id(booking_id)
    if cached:
        return cached
    booking = get_booking_record(db, booking_id)
    cache.refresh(booking)
    return booking_to_dict(booking)


def get_booking_by_reference(db: Session, cache: BookingCache, reference: str) -> dict:
    cached = cache.by_reference(reference)
    if cached:
        return cached
    booking = db.execute(select(Booking).where(Booking.booking_reference == reference)).scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found", details={"bookingReference": reference})
    cache.refresh(booking)
    return booking_to_dict(booking)


def list_user_bookings(db: Session, user_id: str, limit: int = 50) -> list[Booking]:
    return list(
        db.execute(
            select(Booking).where(Booking.user_id == user_id).order_by(Booking.created_at.desc()).limit(limit)
        ).scalars()
    )


def transition_status(db: Session, cache: BookingCache, booking: Booking, target, **values) -> Booking:
    """Move a booking along the state machine.

    The write is conditional on the status the caller observed, so two concurrent
    writers cannot both apply a transition from the same state.
    """
    current = booking.status
    target = BookingStatus(target).value
    try:
        validate_transition(current, target)
    except BookingStateTransitionError as e:
        raise ConflictError(
            f"Booking {booking.booking_reference} cannot move from {current} to {target}",
            details={"bookingId": booking.id, "current": e.current, "target": e.target},
        ) from e

    res = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == current)
        .values(status=target, **values)
    )
    if res.rowcount != 1:
        db.rollback()
        db.refresh(booking)
        raise ConflictError(
            f"Booking {booking.booking_reference} was updated concurrently",
            code="CONCURRENT_UPDATE",
            details={"bookingId": booking.id, "current": booking.status, "target": target},
        )
    log_audit(db, "system", f"booking.{target.lower()}", "booking", booking.id, {"from": current})
    db.commit()
    db.refresh(booking)
    logger.info("booking %s %s -> %s", booking.booking_reference, current, target)
    cache.refresh(booking)
    return booking


def format_travelers(booking: Booking) -> list[dict]:
    """Passenger details in the provider's traveler shape."""
    travelers = []
    for i, p in enumerate(booking.passenger_details or [], start=1):
        t = {
            "id": str(p.get("id") or i),
            "dateOfBirth": p.get("dateOfBirth"),
            "name": {"firstName": p.get("firstName", ""), "lastName": p.get("lastName", "")},
            "contact": {"emailAddress": p.get("email") or booking.contact_email},
        }
        if p.get("gender") in ("MALE", "FEMALE"):
            t["gender"] = p["gender"]
        phone = p.get("phone") or (booking.contact_phone if i == 1 else "")
        if phone:
            t["contact"]["phones"] = [{"deviceType": "MOBILE", "number": phone}]
        if p.get("documentType"):
            t["documents"] = [{
                "documentType": p["documentType"],
                "number": p.get("documentNumber"),
                "issuanceCountry": p.get("documentIssuingCountry"),
                "expiryDate": p.get("documentExpiryDate"),
                "holder": True,
            }]
        travelers.append(t)
    return travelers


def confirm_with_provider(db: Session, cache: BookingCache, provider, booking_id: str) -> Booking:
    """Place the firm provider order for a PENDING booking.

    A provider failure marks the booking FAILED and is not retried here.
    """
    booking = get_booking_record(db, booking_id)
    if booking.status != BookingStatus.PENDING.value:
        raise ConflictError(
            "Booking is not in pending status",
            details={"bookingId": booking.id, "current": booking.status, "target": BookingStatus.CONFIRMED.value},
        )

    logger.info("placing provider order for booking %s", booking.booking_reference)
    try:
        order = provider.create_order(booking.flight_offer_data, format_travelers(booking))
    except ProviderError as e:
        logger.warning("provider order for booking %s failed: %s", booking.booking_reference, e)
        transition_status(db, cache, booking, BookingStatus.FAILED, failure_reason=str(e)[:1000])
        raise UpstreamError(
            "Could not create the flight order with the provider",
            code="PROVIDER_ORDER_FAILED",
            details={"bookingId": booking.id, "status": booking.status, "timeout": e.timeout},
        ) from e

    try:
        return transition_status(
            db, cache, booking, BookingStatus.CONFIRMED,
            provider_order_id=order["id"],
            provider_order_data=order,
        )
    except Exception:
        db.rollback()
        alert_reconciliation(db, "provider_order_unrecorded", "booking", booking.id, {
            "bookingReference": booking.booking_reference,
            "providerOrderId": order.get("id"),
            "order": order,
        })
        raise


def cancel_booking(db: Session, cache: BookingCache, notifier, booking_id: str) -> Booking:
    booking = get_booking_record(db, booking_id)
    if booking.status == BookingStatus.CANCELLED.value:
        raise ConflictError("Booking is already cancelled", code="ALREADY_CANCELLED",
                            details={"bookingId": booking.id})
    if booking.status == BookingStatus.COMPLETED.value:
        raise ConflictError("Cannot cancel a completed booking", code="CANNOT_CANCEL_COMPLETED",
                            details={"bookingId": booking.id})
    booking = transition_status(db, cache, booking, BookingStatus.CANCELLED)
    notifier.booking_cancelled(booking)
    return booking


def generate_eticket(db: Session, cache: BookingCache, booking_id: str) -> str:
    booking = get_booking_record(db, booking_id)
    if booking.e_ticket_url:
        return booking.e_ticket_url
    if booking.status != BookingStatus.CONFIRMED.value:
        raise ConflictError(
            "E-tickets are only issued for confirmed bookings",
            details={"bookingId": booking.id, "current": booking.status},
        )

    pdf = render_eticket_pdf_bytes(
        booking_ref=booking.booking_reference,
        provider_order_id=booking.provider_order_id,
        passengers=booking.passenger_details or [],
        offer=booking.flight_offer_data or {},
        total=str(booking.total_amount),
        currency=booking.currency,
    )
    url = store_eticket_pdf(booking_ref=booking.booking_reference, pdf_bytes=pdf)

    # set once; a concurrent generator may have won
    res = db.execute(
        update(Booking).where(Booking.id == booking.id, Booking.e_ticket_url.is_(None)).values(e_ticket_url=url)
    )
    db.commit()
    db.refresh(booking)
    if res.rowcount == 1:
        logger.info("e-ticket issued for booking %s", booking.booking_reference)
        cache.refresh(booking)
    return booking.e_ticket_url


def attach_user(db: Session, cache: BookingCache, booking_id: str, user: User) -> Booking:
    """Hand a guest booking over to the account registered with its contact email."""
    booking = get_booking_record(db, booking_id)
    if booking.user_id == user.id:
        return booking
    if booking.user_id:
        raise ConflictError("Booking already belongs to another account", code="BOOKING_OWNED",
                            details={"bookingId": booking.id})
    if not booking.contact_email or normalize_email(user.email) != normalize_email(booking.contact_email):
        logger.warning("user %s tried to claim booking %s with a different contact email",
                       user.id, booking.booking_reference)
        raise NotFoundError("Booking not found", details={"bookingId": booking_id})
    res = db.execute(
        update(Booking).where(Booking.id == booking.id, Booking.user_id.is_(None)).values(user_id=user.id)
    )
    if res.rowcount != 1:
        db.rollback()
        raise ConflictError("Booking already belongs to another account", code="BOOKING_OWNED",
                            details={"bookingId": booking.id})
    log_audit(db, user.id, "booking.attach_user", "booking", booking.id)
    db.commit()
    db.refresh(booking)
    cache.refresh(booking)
    return booking


def _record_locator(order: dict) -> str:
    for rec in order.get("associatedRecords") or []:
        if rec.get("reference"):
            return rec["reference"]
    return order["id"]


def create_flight_booking(db: Session, provider, notifier, user: User, offer: dict,
                          travelers: list[dict], contact: dict) -> FlightBooking:
    """Direct order for a registered user: re-price, order, then record.

    The local row is written after the provider order exists; if that write fails the
    order is logged for manual reconciliation and the error propagates.
    """
    candidate = parse_offer(offer)
    check_itinerary(candidate)
    try:
        priced = parse_offer(provider.price_offer(candidate.to_provider()), field="pricedOffer")
    except ProviderError as e:
        raise UpstreamError("Could not verify flight offer with the provider", code="OFFER_VERIFICATION_FAILED",
                            details={"offerId": candidate.id}) from e
    if priced.price.total != candidate.price.total:
        raise price_changed(candidate.price.total, priced.price.total, priced.price.currency)

    traveler_rows = [
        {
            "id": str(i),
            "dateOfBirth": t["dateOfBirth"],
            "name": {"firstName": t["firstName"], "lastName": t["lastName"]},
            **({"gender": t["gender"]} if t.get("gender") in ("MALE", "FEMALE") else {}),
            "contact": {
                "emailAddress": t.get("email") or contact["emailAddress"],
                "phones": [{"deviceType": "MOBILE", "number": t.get("phone") or contact.get("phone", "")}],
            },
        }
        for i, t in enumerate(travelers, start=1)
    ]
    try:
        order = provider.create_order(priced.to_provider(), traveler_rows)
    except ProviderError as e:
        raise UpstreamError("Could not create the flight order with the provider", code="PROVIDER_ORDER_FAILED",
                            details={"offerId": candidate.id, "timeout": e.timeout}) from e

    fb = FlightBooking(
        id=str(uuid.uuid4()),
        user_id=user.id,
        booking_reference=_record_locator(order),
        provider_order_id=order["id"],
        flight_offer_data=priced.to_provider(),
        passengers=travelers,
        contact_email=contact["emailAddress"],
        contact_phone=contact.get("phone", ""),
        total_price=priced.price.total,
        currency=priced.price.currency,
    )
    try:
        db.add(fb)
        db.commit()
    except Exception:
        db.rollback()
        alert_reconciliation(db, "flight_order_unrecorded", "user", user.id, {
            "providerOrderId": order.get("id"),
            "order": order,
            "contact": contact,
        })
        raise
    db.refresh(fb)

    lead = travelers[0]
    notifier.flight_booking_confirmed(
        contact["emailAddress"], f"{lead.get('firstName', '')} {lead.get('lastName', '')}".strip(),
        fb.booking_reference, fb.total_price, fb.currency,
    )
    return fb
