"""
Payment reconciliation.

Both the gateway webhook and the client's verify poll end up in apply_gateway_outcome,
which is the only place Payment.status is written after creation. Every write there is
an UPDATE gated on the status that was read, so re-delivered, reordered or concurrent
events for the same payment apply at most once; the loser sees rowcount 0 and does
nothing (no booking change, no email).

Retrying a failed payment creates a new Payment row. Rows are matched to gateway events
by transaction_id, which is the reference sent to the gateway.
"""
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.booking_state_machine import PAYABLE_STATES, BookingStatus, can_transition
from app.domain.payment_status import PaymentStatus, payment_can_move
from app.errors import AppError, ConflictError, ExpiredError, NotFoundError, UpstreamError, ValidationError
from app.models.booking import Booking
from app.models.payment import Payment
from app.services.audit_service import alert_reconciliation, log_audit
from app.services.booking_service import (
    BookingCache,
    confirm_with_provider,
    get_booking_record,
    is_hold_expired,
    transition_status,
)
from app.services.paystack_client import GatewayError, from_minor_units

logger = logging.getLogger(__name__)

ACK = {"received": True}


def make_transaction_id() -> str:
    return "PAYM-" + uuid.uuid4().hex[:8].upper()


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "transactionId": p.transaction_id,
        "bookingId": p.booking_id,
        "amount": str(p.amount),
        "currency": p.currency,
        "paymentMethod": p.payment_method,
        "status": p.status,
    }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _payment_by_reference(db: Session, reference: str) -> Payment | None:
    return db.execute(select(Payment).where(Payment.transaction_id == reference)).scalar_one_or_none()


def _completed_payment(db: Session, booking_id: str, exclude_id: str | None = None) -> Payment | None:
    q = select(Payment).where(Payment.booking_id == booking_id, Payment.status == PaymentStatus.COMPLETED.value)
    if exclude_id:
        q = q.where(Payment.id != exclude_id)
    return db.execute(q.limit(1)).scalar_one_or_none()


def authoritative_payment(db: Session, booking_id: str) -> Payment | None:
    """Most recent payment for the booking that has not failed."""
    return db.execute(
        select(Payment)
        .where(Payment.booking_id == booking_id, Payment.status != PaymentStatus.FAILED.value)
        .order_by(Payment.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def initialize_payment(db: Session, gateway, booking_id: str, amount: Decimal, currency: str, email: str,
                       user_id: str | None = None, callback_url: str | None = None,
                       payment_method: str = "paystack") -> tuple[Payment, dict]:
    booking = get_booking_record(db, booking_id)
    if user_id and booking.user_id and booking.user_id != user_id:
        raise NotFoundError("Booking not found", details={"bookingId": booking_id})

    if _completed_payment(db, booking.id):
        raise ConflictError("Booking has already been paid", code="PAYMENT_ALREADY_COMPLETED",
                            details={"bookingId": booking.id})
    if BookingStatus(booking.status) not in PAYABLE_STATES:
        raise ConflictError(
            f"Booking in status {booking.status} cannot be paid",
            details={"bookingId": booking.id, "current": booking.status},
        )
    if is_hold_expired(booking):
        raise ExpiredError("Booking hold has expired. Please book again.", code="BOOKING_EXPIRED",
                           details={"bookingId": booking.id})
    if Decimal(amount) != booking.total_amount or currency != booking.currency:
        raise ValidationError(
            "Payment amount does not match the booking total",
            details={"field": "amount", "expected": str(booking.total_amount), "currency": booking.currency},
        )

    for _ in range(10):
        tx = make_transaction_id()
        if not _payment_by_reference(db, tx):
            break
    else:
        raise RuntimeError("could not allocate transaction id")

    payment = Payment(
        id=str(uuid.uuid4()),
        transaction_id=tx,
        booking_id=booking.id,
        user_id=user_id or booking.user_id,
        amount=booking.total_amount,
        currency=booking.currency,
        payment_method=payment_method,
        status=PaymentStatus.PENDING.value,
        payment_data={"email": email, "processor": "paystack", "reference": tx},
    )
    db.add(payment)
    db.commit()

    try:
        data = gateway.initialize_transaction(
            reference=tx,
            amount=booking.total_amount,
            currency=booking.currency,
            email=email,
            callback_url=callback_url or settings.PAYMENT_CALLBACK_URL or None,
            metadata={"bookingId": booking.id, "bookingReference": booking.booking_reference, "paymentId": payment.id},
        )
    except GatewayError as e:
        logger.warning("gateway init for %s (booking %s) failed: %s", tx, booking.booking_reference, e)
        # nothing was charged: close the attempt without touching the booking
        db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.FAILED.value,
                    payment_data={**payment.payment_data, "failureReason": str(e)[:500]})
        )
        db.commit()
        raise UpstreamError("Could not initialize payment with the gateway", code="PAYMENT_GATEWAY_ERROR",
                            details={"bookingId": booking.id}) from e

    payment.payment_data = {
        **(payment.payment_data or {}),
        "authorizationUrl": data.get("authorization_url"),
        "accessCode": data.get("access_code"),
    }
    db.commit()
    db.refresh(payment)
    logger.info("payment %s opened for booking %s (%s %s)", tx, booking.booking_reference, payment.amount, payment.currency)
    return payment, data


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _settlement_data(data: dict, source: str) -> dict:
    out = {
        "processedAt": _now_iso(),
        "source": source,
        "metadata": data.get("metadata") or {},
        "gatewayData": data,
    }
    if data.get("amount") is not None:
        out["amount"] = str(from_minor_units(data["amount"]))
    if data.get("currency"):
        out["currency"] = data["currency"]
    return out


def apply_gateway_outcome(db: Session, cache: BookingCache, notifier, payment: Payment, target,
                          extra: dict | None = None, *, provider=None) -> bool:
    """Apply a terminal gateway outcome to a payment and its booking.

    Returns True when this call changed the payment. False means the outcome was
    already applied, is not a legal move from the current status, or a concurrent
    delivery got there first.
    """
    target = PaymentStatus(target)
    current = payment.status
    if current == target.value:
        logger.info("payment %s already %s, duplicate event ignored", payment.transaction_id, current)
        return False
    if not payment_can_move(current, target.value):
        logger.warning("payment %s is %s, ignoring %s", payment.transaction_id, current, target.value)
        return False

    merged = {**(payment.payment_data or {}), **(extra or {})}
    res = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == current)
        .values(status=target.value, payment_data=merged)
    )
    if res.rowcount != 1:
        db.rollback()
        logger.info("payment %s changed concurrently, %s not applied", payment.transaction_id, target.value)
        return False
    log_audit(db, "gateway", f"payment.{target.value.lower()}", "payment", payment.id,
              {"from": current, "transactionId": payment.transaction_id})
    db.commit()
    db.refresh(payment)
    logger.info("payment %s %s -> %s", payment.transaction_id, current, target.value)

    booking = db.get(Booking, payment.booking_id)
    if booking is None:
        alert_reconciliation(db, "payment_without_booking", "payment", payment.id,
                             {"transactionId": payment.transaction_id, "status": payment.status})
        return True

    if target is PaymentStatus.COMPLETED:
        _on_completed(db, cache, notifier, payment, booking, provider)
    elif target is PaymentStatus.FAILED:
        _on_failed(db, cache, payment, booking)
    elif target is PaymentStatus.REFUNDED:
        _on_refunded(db, cache, notifier, payment, booking)
    return True


def _on_completed(db: Session, cache: BookingCache, notifier, payment: Payment, booking: Booking, provider) -> None:
    settled = (payment.payment_data or {}).get("amount")
    if settled is not None and Decimal(settled) != payment.amount:
        alert_reconciliation(db, "amount_mismatch", "payment", payment.id, {
            "transactionId": payment.transaction_id,
            "expected": str(payment.amount),
            "settled": settled,
            "currency": payment.currency,
        })
    other = _completed_payment(db, booking.id, exclude_id=payment.id)
    if other:
        alert_reconciliation(db, "duplicate_capture", "booking", booking.id, {
            "bookingReference": booking.booking_reference,
            "transactionIds": [other.transaction_id, payment.transaction_id],
        })

    try:
        if booking.status == BookingStatus.CONFIRMED.value:
            pass
        elif (booking.status == BookingStatus.PENDING.value and booking.user_id
              and settings.CONFIRM_ORDER_ON_PAYMENT and provider is not None):
            booking = confirm_with_provider(db, cache, provider, booking.id)
        elif can_transition(booking.status, BookingStatus.CONFIRMED.value):
            booking = transition_status(db, cache, booking, BookingStatus.CONFIRMED)
        else:
            alert_reconciliation(db, "payment_for_unconfirmable_booking", "booking", booking.id, {
                "bookingReference": booking.booking_reference,
                "bookingStatus": booking.status,
                "transactionId": payment.transaction_id,
                "amount": str(payment.amount),
                "currency": payment.currency,
            })
    except AppError as e:
        db.refresh(booking)
        alert_reconciliation(db, "payment_captured_booking_not_confirmed", "booking", booking.id, {
            "bookingReference": booking.booking_reference,
            "bookingStatus": booking.status,
            "transactionId": payment.transaction_id,
            "error": e.code,
            "message": e.message,
        })

    notifier.payment_confirmed(booking, payment.amount, payment.currency)


def _on_failed(db: Session, cache: BookingCache, payment: Payment, booking: Booking) -> None:
    if _completed_payment(db, booking.id, exclude_id=payment.id):
        logger.info("payment %s failed but booking %s is already paid", payment.transaction_id,
                    booking.booking_reference)
        return
    # only a retry started after this attempt supersedes it; older open attempts do not
    latest = authoritative_payment(db, booking.id)
    if latest is not None and latest.created_at > payment.created_at:
        logger.info("payment %s failed, booking %s has newer attempt %s open", payment.transaction_id,
                    booking.booking_reference, latest.transaction_id)
        return
    if not can_transition(booking.status, BookingStatus.PAYMENT_FAILED.value):
        logger.info("booking %s is %s, not marking payment failure", booking.booking_reference, booking.status)
        return
    try:
        transition_status(db, cache, booking, BookingStatus.PAYMENT_FAILED,
                          failure_reason=(payment.payment_data or {}).get("failureReason"))
    except ConflictError as e:
        logger.warning("booking %s not marked PAYMENT_FAILED: %s", booking.booking_reference, e.message)


def _on_refunded(db: Session, cache: BookingCache, notifier, payment: Payment, booking: Booking) -> None:
    refunded = (payment.payment_data or {}).get("refundedAmount") or str(payment.amount)
    if can_transition(booking.status, BookingStatus.REFUNDED.value):
        try:
            booking = transition_status(db, cache, booking, BookingStatus.REFUNDED)
        except ConflictError as e:
            alert_reconciliation(db, "refund_booking_not_updated", "booking", booking.id, {
                "bookingReference": booking.booking_reference,
                "transactionId": payment.transaction_id,
                "message": e.message,
            })
    else:
        logger.warning("payment %s refunded but booking %s is %s", payment.transaction_id,
                       booking.booking_reference, booking.status)
    notifier.payment_refunded(booking, refunded, payment.currency)


def _event_reference(kind: str, data: dict) -> str | None:
    if kind == "refund.processed":
        tx = data.get("transaction") or {}
        return data.get("transaction_reference") or tx.get("reference") or data.get("reference")
    return data.get("reference")


def handle_gateway_event(db: Session, cache: BookingCache, notifier, raw_body: bytes, signature: str | None,
                         *, provider=None, secret: str | None = None) -> dict:
    """Process one webhook delivery. Always acknowledges; problems go to the log."""
    secret = settings.PAYSTACK_WEBHOOK_SECRET if secret is None else secret
    try:
        if secret:
            if not verify_webhook_signature(raw_body, signature, secret):
                logger.warning("webhook rejected: missing or invalid signature")
                return ACK
        else:
            logger.debug("no webhook secret configured, accepting unsigned event")

        event = json.loads(raw_body or b"{}")
        kind = event.get("event") or ""
        data = event.get("data") or {}

        if kind not in ("charge.success", "charge.failed", "refund.processed"):
            logger.info("unhandled gateway event %s", kind or "<none>")
            return ACK

        reference = _event_reference(kind, data)
        payment = _payment_by_reference(db, reference) if reference else None
        if payment is None:
            logger.warning("%s for unknown reference %s", kind, reference)
            return ACK

        if kind == "charge.success":
            apply_gateway_outcome(db, cache, notifier, payment, PaymentStatus.COMPLETED,
                                  _settlement_data(data, "webhook"), provider=provider)
        elif kind == "charge.failed":
            extra = _settlement_data(data, "webhook")
            extra["failureReason"] = data.get("gateway_response") or "Payment failed"
            apply_gateway_outcome(db, cache, notifier, payment, PaymentStatus.FAILED, extra)
        else:
            extra = {"refundedAt": _now_iso(), "source": "webhook", "refundData": data}
            if data.get("amount") is not None:
                extra["refundedAmount"] = str(from_minor_units(data["amount"]))
            apply_gateway_outcome(db, cache, notifier, payment, PaymentStatus.REFUNDED, extra)
    except Exception:
        db.rollback()
        logger.exception("webhook processing failed")
    return ACK


def verify_payment(db: Session, cache: BookingCache, gateway, notifier, reference: str, *, provider=None) -> dict:
    """Poll the gateway for a transaction and reconcile it like a webhook would."""
    payment = _payment_by_reference(db, reference)
    if not payment:
        raise NotFoundError("Payment not found", details={"reference": reference})

    if payment.status == PaymentStatus.PENDING.value:
        try:
            data = gateway.verify_transaction(reference)
        except GatewayError as e:
            raise UpstreamError("Could not verify payment with the gateway", code="PAYMENT_GATEWAY_ERROR",
                                details={"reference": reference}) from e

        status = (data or {}).get("status")
        if status == "success":
            apply_gateway_outcome(db, cache, notifier, payment, PaymentStatus.COMPLETED,
                                  _settlement_data(data, "verify"), provider=provider)
        elif status in ("failed", "abandoned"):
            extra = _settlement_data(data, "verify")
            extra["failureReason"] = data.get("gateway_response") or f"Payment {status}"
            apply_gateway_outcome(db, cache, notifier, payment, PaymentStatus.FAILED, extra)
        else:
            logger.info("payment %s still %s at gateway", reference, status)
        db.refresh(payment)

    return {
        "paymentId": payment.id,
        "transactionId": payment.transaction_id,
        "bookingId": payment.booking_id,
        "status": payment.status,
        "verified": payment.status == PaymentStatus.COMPLETED.value,
    }


def refund_payment(db: Session, cache: BookingCache, notifier, payment_id: str,
                   amount: Decimal | None = None, actor: str = "system") -> Payment:
    payment = get_payment(db, payment_id)
    if payment.status != PaymentStatus.COMPLETED.value:
        raise ConflictError("Cannot refund a payment that is not completed", code="PAYMENT_NOT_COMPLETED",
                            details={"paymentId": payment.id, "current": payment.status})
    refund = Decimal(amount) if amount is not None else payment.amount
    if refund <= 0 or refund > payment.amount:
        raise ValidationError("Refund amount must be positive and not exceed the payment",
                              details={"field": "amount", "max": str(payment.amount)})

    changed = apply_gateway_outcome(db, cache, notifier, payment, PaymentStatus.REFUNDED, {
        "refundedAt": _now_iso(),
        "refundedAmount": str(refund),
        "refundedBy": actor,
        "processor": "paystack",
    })
    if not changed:
        db.refresh(payment)
        raise ConflictError("Payment was updated concurrently", code="CONCURRENT_UPDATE",
                            details={"paymentId": payment.id, "current": payment.status})
    return payment


def get_payment(db: Session, payment_id: str, user_id: str | None = None) -> Payment:
    payment = db.get(Payment, payment_id)
    if not payment or (user_id and payment.user_id != user_id):
        raise NotFoundError("Payment not found", details={"paymentId": payment_id})
    return payment


def list_user_payments(db: Session, user_id: str, limit: int = 50) -> list[Payment]:
    return list(
        db.execute(
            select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc()).limit(limit)
        ).scalars()
    )
