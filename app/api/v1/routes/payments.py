from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.api.deps import get_cache, get_current_user, get_gateway, get_notifier, get_optional_user, get_provider, require_roles
from app.models.user import User
from app.schemas.payments import PaymentInitOut, PaymentInitRequest, PaymentOut, PaymentVerifyOut, RefundRequest
from app.services import payment_service
from app.services.booking_service import BookingCache
from app.services.email_service import EmailNotifier

router = APIRouter(tags=["payments"])


@router.post("/payments/initialize", response_model=PaymentInitOut, status_code=201)
def initialize(body: PaymentInitRequest,
               db: Session = Depends(get_db),
               gateway=Depends(get_gateway),
               user: User | None = Depends(get_optional_user)):
    payment, data = payment_service.initialize_payment(
        db, gateway, body.bookingId, body.amount, body.currency, body.email,
        user_id=user.id if user else None,
        callback_url=body.callbackUrl,
        payment_method=body.paymentMethod,
    )
    return PaymentInitOut(
        paymentId=payment.id,
        transactionId=payment.transaction_id,
        authorizationUrl=data.get("authorization_url") or "",
        accessCode=data.get("access_code") or "",
    )


@router.get("/payments/verify/{reference}", response_model=PaymentVerifyOut)
def verify(reference: str,
           db: Session = Depends(get_db),
           cache: BookingCache = Depends(get_cache),
           gateway=Depends(get_gateway),
           provider=Depends(get_provider),
           notifier: EmailNotifier = Depends(get_notifier)):
    return payment_service.verify_payment(db, cache, gateway, notifier, reference, provider=provider)


@router.post("/payments/webhook")
async def webhook(request: Request,
                  db: Session = Depends(get_db),
                  cache: BookingCache = Depends(get_cache),
                  provider=Depends(get_provider),
                  notifier: EmailNotifier = Depends(get_notifier)):
    """Paystack webhook. Always 200 so the gateway does not retry-storm on our failures."""
    body = await request.body()
    return payment_service.handle_gateway_event(
        db, cache, notifier, body, request.headers.get("x-paystack-signature"), provider=provider,
    )


@router.post("/payments/{payment_id}/refund", response_model=PaymentOut)
def refund(payment_id: str, body: RefundRequest,
           db: Session = Depends(get_db),
           cache: BookingCache = Depends(get_cache),
           notifier: EmailNotifier = Depends(get_notifier),
           me: User = Depends(require_roles("ADMIN"))):
    payment = payment_service.refund_payment(db, cache, notifier, payment_id, body.amount, actor=me.id)
    return payment_service.payment_to_dict(payment)


@router.get("/payments/history", response_model=list[PaymentOut])
def history(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [payment_service.payment_to_dict(p) for p in payment_service.list_user_payments(db, me.id)]


@router.get("/payments/{payment_id}", response_model=PaymentOut)
def get_payment(payment_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return payment_service.payment_to_dict(payment_service.get_payment(db, payment_id, user_id=me.id))
