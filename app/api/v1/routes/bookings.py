from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.models.user import User
from app.schemas.booking import BookingCreate, BookingOut, ETicketOut, FlightBookingCreate
from app.api.deps import get_cache, get_current_user, get_kv, get_notifier, get_optional_user, get_provider
from app.errors import NotFoundError
from app.services import booking_service
from app.services.booking_service import BookingCache, booking_to_dict
from app.services.email_service import EmailNotifier
from app.services.kv_store import KeyValueStore

router = APIRouter(tags=["bookings"])

def _visible(view: dict, user: User | None) -> dict:
    # owned bookings are only shown to their owner; guest bookings by id/reference
    if view.get("userId") and (user is None or user.id != view["userId"]):
        raise NotFoundError("Booking not found")
    return view

def _owned(db: Session, cache: BookingCache, booking_id: str, user: User | None) -> None:
    _visible(booking_service.get_booking(db, cache, booking_id), user)

@router.post("/bookings", response_model=BookingOut, status_code=201)
def create_booking(body: BookingCreate,
                   db: Session = Depends(get_db),
                   kv: KeyValueStore = Depends(get_kv),
                   cache: BookingCache = Depends(get_cache),
                   notifier: EmailNotifier = Depends(get_notifier),
                   user: User | None = Depends(get_optional_user)):
    booking = booking_service.create_booking(
        db, kv, cache, notifier,
        offer_id=body.flightOfferId,
        passengers=[p.model_dump() for p in body.passengers],
        total_amount=body.totalAmount,
        currency=body.currency,
        contact_email=body.contactEmail,
        contact_phone=body.contactPhone,
        user_id=user.id if user else None,
        idempotency_key=body.idempotencyKey,
    )
    return booking_to_dict(booking)

@router.get("/bookings", response_model=list[BookingOut])
def my_bookings(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [booking_to_dict(b) for b in booking_service.list_user_bookings(db, me.id)]

@router.get("/bookings/reference/{reference}", response_model=BookingOut)
def get_by_reference(reference: str,
                     db: Session = Depends(get_db),
                     cache: BookingCache = Depends(get_cache),
                     user: User | None = Depends(get_optional_user)):
    return _visible(booking_service.get_booking_by_reference(db, cache, reference), user)

@router.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str,
                db: Session = Depends(get_db),
                cache: BookingCache = Depends(get_cache),
                user: User | None = Depends(get_optional_user)):
    return _visible(booking_service.get_booking(db, cache, booking_id), user)

@router.post("/bookings/{booking_id}/confirm", response_model=BookingOut)
def confirm(booking_id: str,
            db: Session = Depends(get_db),
            cache: BookingCache = Depends(get_cache),
            provider=Depends(get_provider),
            me: User = Depends(get_current_user)):
    _owned(db, cache, booking_id, me)
    return booking_to_dict(booking_service.confirm_with_provider(db, cache, provider, booking_id))

@router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
def cancel(booking_id: str,
           db: Session = Depends(get_db),
           cache: BookingCache = Depends(get_cache),
           notifier: EmailNotifier = Depends(get_notifier),
           user: User | None = Depends(get_optional_user)):
    _owned(db, cache, booking_id, user)
    return booking_to_dict(booking_service.cancel_booking(db, cache, notifier, booking_id))

@router.post("/bookings/{booking_id}/e-ticket", response_model=ETicketOut)
def e_ticket(booking_id: str,
             db: Session = Depends(get_db),
             cache: BookingCache = Depends(get_cache),
             user: User | None = Depends(get_optional_user)):
    _owned(db, cache, booking_id, user)
    url = booking_service.generate_eticket(db, cache, booking_id)
    booking = booking_service.get_booking_record(db, booking_id)
    return ETicketOut(bookingReference=booking.booking_reference, eTicketUrl=url)

@router.post("/bookings/{booking_id}/claim", response_model=BookingOut)
def claim(booking_id: str,
          db: Session = Depends(get_db),
          cache: BookingCache = Depends(get_cache),
          me: User = Depends(get_current_user)):
    return booking_to_dict(booking_service.attach_user(db, cache, booking_id, me))

@router.post("/flight-bookings", status_code=201)
def create_flight_booking(body: FlightBookingCreate,
                          db: Session = Depends(get_db),
                          provider=Depends(get_provider),
                          notifier: EmailNotifier = Depends(get_notifier),
                          me: User = Depends(get_current_user)):
    fb = booking_service.create_flight_booking(
        db, provider, notifier, me, body.flightOffer,
        [t.model_dump() for t in body.travelers], body.contact.model_dump(),
    )
    return {
        "id": fb.id,
        "bookingReference": fb.booking_reference,
        "providerOrderId": fb.provider_order_id,
        "bookingStatus": fb.booking_status,
        "paymentStatus": fb.payment_status,
        "totalPrice": str(fb.total_price),
        "currency": fb.currency,
    }
