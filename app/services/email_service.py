from datetime import datetime, timezone
import logging
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session
import uuid
import requests

from app.core.config import settings
from app.models.email_log import EmailLog

logger = logging.getLogger(__name__)

MAX_SEND_ATTEMPTS = 5


def queue_email(db: Session, to_email: str, template: str, subject: str, body: str,
                related_booking_ref: str = "", store_body: bool = True) -> str:
    """Queue and attempt immediate send.

    The body is stored so the worker can retry on failure. With store_body=False
    (one-time codes) only the envelope is kept and a failed send is not retried.
    """
    eid = str(uuid.uuid4())
    db.add(
        EmailLog(
            id=eid,
            to_email=to_email,
            template=template,
            subject=subject,
            body=body if store_body else None,
            status="queued",
            related_booking_ref=related_booking_ref,
        )
    )
    db.commit()

    log = db.get(EmailLog, eid)
    try:
        send_email(to_email, subject, body)
        if log:
            log.status = "sent"
            log.attempts = 1
            log.sent_at = datetime.now(timezone.utc)
            db.commit()
    except Exception as e:
        logger.warning("email %s to %s failed, left for retry: %s", template, to_email, e)
        if log:
            log.status = "failed"
            log.attempts = 1
            db.commit()

    return eid


def send_email(to_email: str, subject: str, body: str):
    """Send email via SendGrid if configured, otherwise SMTP (MailHog recommended for local)."""

    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
        return

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    from_email = settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    r = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Process up to `limit` queued or failed emails; retry send and update status. Returns counts."""
    pending = (
        db.query(EmailLog)
        .filter(
            EmailLog.status.in_(["queued", "failed"]),
            EmailLog.body.isnot(None),
            EmailLog.body != "",
            EmailLog.attempts < MAX_SEND_ATTEMPTS,
        )
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent, failed = 0, 0
    for log in pending:
        log.attempts = (log.attempts or 0) + 1
        try:
            send_email(log.to_email, log.subject, log.body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            sent += 1
        except Exception as e:
            logger.warning("retry %s for email %s failed: %s", log.attempts, log.id, e)
            log.status = "failed"
            failed += 1
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": failed}


def _money(amount, currency: str) -> str:
    return f"{amount} {currency}"


class EmailNotifier:
    """Templated transactional emails. Every send is fire-and-forget: failures are logged, never raised."""

    def __init__(self, db: Session):
        self.db = db

    def _send(self, to_email: str, template: str, subject: str, body: str,
              booking_ref: str = "", store_body: bool = True) -> None:
        if not to_email:
            logger.info("no recipient for %s (booking %s), skipped", template, booking_ref or "-")
            return
        try:
            queue_email(self.db, to_email, template, subject, body,
                        related_booking_ref=booking_ref, store_body=store_body)
        except Exception:
            logger.exception("could not queue %s email for booking %s", template, booking_ref or "-")
            self.db.rollback()

    def booking_created(self, booking) -> None:
        passengers = ", ".join(
            f"{p.get('firstName', '')} {p.get('lastName', '')}".strip() for p in booking.passenger_details or []
        )
        self._send(
            booking.contact_email,
            "booking_created",
            f"Your booking {booking.booking_reference} is reserved",
            (
                f"Booking reference: {booking.booking_reference}\n"
                f"Passengers: {passengers}\n"
                f"Total: {_money(booking.total_amount, booking.currency)}\n\n"
                f"Complete payment before {booking.expires_at:%Y-%m-%d %H:%M} UTC to keep this reservation.\n"
            ),
            booking_ref=booking.booking_reference,
        )

    def booking_cancelled(self, booking) -> None:
        self._send(
            booking.contact_email,
            "booking_cancelled",
            f"Booking {booking.booking_reference} cancelled",
            f"Your booking {booking.booking_reference} has been cancelled.\n",
            booking_ref=booking.booking_reference,
        )

    def payment_confirmed(self, booking, amount, currency: str) -> None:
        self._send(
            booking.contact_email,
            "payment_confirmed",
            f"Payment received for {booking.booking_reference}",
            (
                f"We received your payment of {_money(amount, currency)}.\n"
                f"Booking {booking.booking_reference} is now {booking.status}.\n"
            ),
            booking_ref=booking.booking_reference,
        )

    def payment_refunded(self, booking, amount, currency: str) -> None:
        self._send(
            booking.contact_email,
            "payment_refunded",
            f"Refund processed for {booking.booking_reference}",
            f"A refund of {_money(amount, currency)} for booking {booking.booking_reference} has been processed.\n",
            booking_ref=booking.booking_reference,
        )

    def otp_code(self, email: str, code: str, purpose: str, ttl_minutes: int) -> None:
        self._send(
            email,
            "otp_code",
            "Your verification code",
            f"Your {purpose} verification code is {code}. It expires in {ttl_minutes} minutes.\n",
            store_body=False,
        )

    def flight_booking_confirmed(self, email: str, name: str, booking_reference: str, total, currency: str) -> None:
        self._send(
            email,
            "flight_booking_confirmed",
            f"Flight booked: {booking_reference}",
            (
                f"Hello {name or 'Traveler'},\n\n"
                f"Your flight is booked. Airline reference: {booking_reference}\n"
                f"Total charged: {_money(total, currency)}\n"
            ),
            booking_ref=booking_reference,
        )
