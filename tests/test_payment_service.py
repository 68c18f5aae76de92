import hashlib
import hmac
import json
import re
from decimal import Decimal

import pytest

from app.errors import ConflictError, ExpiredError, UpstreamError, ValidationError
from app.models.audit_log import AuditLog
from app.models.payment import Payment
from app.services import payment_service
from app.services.amadeus_client import ProviderError
from app.services.paystack_client import GatewayError
from tests.doubles import expire_hold

SECRET = "sk_test_webhook"


def _event(kind: str, reference: str, amount: int = 50000, **data) -> bytes:
    return json.dumps({"event": kind, "data": {"reference": reference, "amount": amount, "currency": "GHS", **data}}).encode()


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


@pytest.fixture
def pay(db, gateway):
    def _init(booking, amount: str = "500.00", currency: str = "GHS") -> Payment:
        payment, _ = payment_service.initialize_payment(
            db, gateway, booking.id, Decimal(amount), currency, "ama@example.com",
        )
        return payment

    return _init


@pytest.fixture
def deliver(db, cache, notifier, provider):
    def _deliver(body: bytes, signature: str | None = None, secret: str = "") -> dict:
        return payment_service.handle_gateway_event(
            db, cache, notifier, body, signature, provider=provider, secret=secret,
        )

    return _deliver


def _alerts(db, action: str) -> list[AuditLog]:
    return db.query(AuditLog).filter(AuditLog.action == f"reconciliation.{action}").all()


class TestInitializePayment:
    def test_opens_gateway_transaction(self, db, gateway, make_booking, pay):
        b = make_booking()
        p = pay(b)
        assert re.fullmatch(r"PAYM-[0-9A-F]{8}", p.transaction_id)
        assert p.status == "PENDING"
        assert p.amount == Decimal("500.00")
        assert p.payment_data["authorizationUrl"].endswith(p.transaction_id)
        kwargs = gateway.initialize_transaction.call_args.kwargs
        assert kwargs["reference"] == p.transaction_id
        assert kwargs["metadata"]["bookingId"] == b.id

    def test_amount_must_match_booking(self, make_booking, pay):
        with pytest.raises(ValidationError):
            pay(make_booking(), amount="499.99")

    def test_expired_hold(self, db, make_booking, pay):
        b = make_booking()
        expire_hold(db, b)
        with pytest.raises(ExpiredError) as exc:
            pay(b)
        assert exc.value.code == "BOOKING_EXPIRED"

    def test_cannot_pay_twice(self, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))
        with pytest.raises(ConflictError) as exc:
            pay(b)
        assert exc.value.code == "PAYMENT_ALREADY_COMPLETED"

    def test_cannot_pay_cancelled_booking(self, db, cache, notifier, make_booking, pay):
        from app.services.booking_service import cancel_booking

        b = make_booking()
        cancel_booking(db, cache, notifier, b.id)
        with pytest.raises(ConflictError):
            pay(b)

    def test_gateway_error_closes_attempt(self, db, gateway, make_booking, pay):
        gateway.initialize_transaction.side_effect = GatewayError("Paystack 503")
        b = make_booking()
        with pytest.raises(UpstreamError) as exc:
            pay(b)
        assert exc.value.code == "PAYMENT_GATEWAY_ERROR"
        p = db.query(Payment).one()
        assert p.status == "FAILED"
        db.refresh(b)
        assert b.status == "PENDING"

    def test_retry_after_failure_creates_new_payment(self, db, make_booking, pay, deliver):
        b = make_booking()
        first = pay(b)
        deliver(_event("charge.failed", first.transaction_id, gateway_response="Declined"))
        second = pay(b)
        assert second.id != first.id
        assert db.query(Payment).count() == 2


class TestWebhookSettlement:
    def test_scenario_a_charge_success(self, db, make_booking, pay, deliver, notifier):
        b = make_booking()
        p = pay(b)

        assert deliver(_event("charge.success", p.transaction_id, amount=50000)) == {"received": True}

        db.refresh(p)
        db.refresh(b)
        assert p.status == "COMPLETED"
        assert p.amount == Decimal("500.00")
        assert p.payment_data["amount"] == "500.00"
        assert p.payment_data["authorizationUrl"]  # earlier data kept
        assert b.status == "CONFIRMED"
        notifier.payment_confirmed.assert_called_once()

    def test_duplicate_delivery_notifies_once(self, db, make_booking, pay, deliver, notifier):
        b = make_booking()
        p = pay(b)
        body = _event("charge.success", p.transaction_id)
        deliver(body)
        deliver(body)
        db.refresh(p)
        assert p.status == "COMPLETED"
        assert notifier.payment_confirmed.call_count == 1

    def test_scenario_b_failed_after_completed_is_ignored(self, db, make_booking, pay, deliver, notifier):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))
        deliver(_event("charge.failed", p.transaction_id, gateway_response="Declined"))
        db.refresh(p)
        db.refresh(b)
        assert p.status == "COMPLETED"
        assert b.status == "CONFIRMED"
        assert notifier.payment_confirmed.call_count == 1

    def test_charge_failed(self, db, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.failed", p.transaction_id, gateway_response="Insufficient Funds"))
        db.refresh(p)
        db.refresh(b)
        assert p.status == "FAILED"
        assert p.payment_data["failureReason"] == "Insufficient Funds"
        assert b.status == "PAYMENT_FAILED"

    def test_retry_settles_payment_failed_booking(self, db, make_booking, pay, deliver):
        b = make_booking()
        first = pay(b)
        deliver(_event("charge.failed", first.transaction_id))
        second = pay(b)
        deliver(_event("charge.success", second.transaction_id))
        db.refresh(b)
        assert b.status == "CONFIRMED"

    def test_stale_failure_does_not_undo_confirmation(self, db, make_booking, pay, deliver):
        b = make_booking()
        older = pay(b)
        newer = pay(b)
        deliver(_event("charge.success", newer.transaction_id))
        deliver(_event("charge.failed", older.transaction_id))
        db.refresh(b)
        assert b.status == "CONFIRMED"

    def test_newest_attempt_failing_marks_booking(self, db, make_booking, pay, deliver):
        b = make_booking()
        older = pay(b)
        newer = pay(b)
        deliver(_event("charge.failed", newer.transaction_id))
        db.refresh(b)
        assert b.status == "PAYMENT_FAILED"
        assert payment_service.authoritative_payment(db, b.id).id == older.id

    def test_older_attempt_failing_leaves_newer_open(self, db, make_booking, pay, deliver):
        b = make_booking()
        older = pay(b)
        newer = pay(b)
        deliver(_event("charge.failed", older.transaction_id))
        db.refresh(b)
        assert b.status == "PENDING"
        assert payment_service.authoritative_payment(db, b.id).id == newer.id

    def test_registered_booking_gets_provider_order(self, db, make_booking, pay, deliver, provider):
        b = make_booking(user_id="u1")
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))
        db.refresh(b)
        assert b.status == "CONFIRMED"
        assert b.provider_order_id == "eJzTd9f3NjIJdjMGAAtXAmE="
        provider.create_order.assert_called_once()

    def test_provider_failure_after_capture_alerts(self, db, make_booking, pay, deliver, provider, notifier):
        provider.create_order.side_effect = ProviderError("no availability", status_code=400)
        b = make_booking(user_id="u1")
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))
        db.refresh(p)
        db.refresh(b)
        assert p.status == "COMPLETED"
        assert b.status == "FAILED"
        assert len(_alerts(db, "payment_captured_booking_not_confirmed")) == 1
        notifier.payment_confirmed.assert_called_once()

    def test_payment_for_cancelled_booking_alerts(self, db, cache, make_booking, pay, deliver, notifier):
        from app.services.booking_service import cancel_booking

        b = make_booking()
        p = pay(b)
        cancel_booking(db, cache, notifier, b.id)
        deliver(_event("charge.success", p.transaction_id))
        db.refresh(p)
        db.refresh(b)
        assert p.status == "COMPLETED"
        assert b.status == "CANCELLED"
        assert len(_alerts(db, "payment_for_unconfirmable_booking")) == 1

    def test_amount_mismatch_alerts_but_settles(self, db, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id, amount=40000))
        db.refresh(p)
        assert p.status == "COMPLETED"
        assert len(_alerts(db, "amount_mismatch")) == 1

    def test_refund_processed(self, db, make_booking, pay, deliver, notifier):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))
        body = json.dumps({"event": "refund.processed",
                           "data": {"transaction_reference": p.transaction_id, "amount": 50000}}).encode()
        deliver(body)
        db.refresh(p)
        db.refresh(b)
        assert p.status == "REFUNDED"
        assert b.status == "REFUNDED"
        notifier.payment_refunded.assert_called_once()

    def test_unknown_event_and_reference_are_acked(self, db, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        assert deliver(_event("transfer.success", p.transaction_id)) == {"received": True}
        assert deliver(_event("charge.success", "PAYM-DEADBEEF")) == {"received": True}
        db.refresh(p)
        assert p.status == "PENDING"

    def test_garbage_body_is_acked(self, deliver):
        assert deliver(b"not json") == {"received": True}


class TestSignature:
    def test_verify_webhook_signature(self):
        body = b'{"event":"charge.success"}'
        assert payment_service.verify_webhook_signature(body, _sign(body), SECRET)
        assert not payment_service.verify_webhook_signature(body, _sign(body, "other"), SECRET)
        assert not payment_service.verify_webhook_signature(body, None, SECRET)

    def test_bad_signature_is_acked_without_processing(self, db, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        body = _event("charge.success", p.transaction_id)
        assert deliver(body, signature="0" * 128, secret=SECRET) == {"received": True}
        db.refresh(p)
        assert p.status == "PENDING"

    def test_unsigned_rejected_when_secret_set(self, db, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id), signature=None, secret=SECRET)
        db.refresh(p)
        assert p.status == "PENDING"

    def test_signed_event_processed(self, db, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        body = _event("charge.success", p.transaction_id)
        deliver(body, signature=_sign(body), secret=SECRET)
        db.refresh(p)
        assert p.status == "COMPLETED"


class TestVerifyPayment:
    def test_poll_then_webhook_converge(self, db, cache, gateway, notifier, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        gateway.verify_transaction.return_value = {
            "status": "success", "reference": p.transaction_id, "amount": 50000, "currency": "GHS",
        }

        out = payment_service.verify_payment(db, cache, gateway, notifier, p.transaction_id)
        deliver(_event("charge.success", p.transaction_id))

        assert out["verified"] is True
        assert out["status"] == "COMPLETED"
        assert notifier.payment_confirmed.call_count == 1

    def test_webhook_then_poll_skips_gateway(self, db, cache, gateway, notifier, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))
        out = payment_service.verify_payment(db, cache, gateway, notifier, p.transaction_id)
        assert out["verified"] is True
        gateway.verify_transaction.assert_not_called()

    def test_abandoned(self, db, cache, gateway, notifier, make_booking, pay):
        b = make_booking()
        p = pay(b)
        gateway.verify_transaction.return_value = {"status": "abandoned", "reference": p.transaction_id}
        out = payment_service.verify_payment(db, cache, gateway, notifier, p.transaction_id)
        assert out == {
            "paymentId": p.id,
            "transactionId": p.transaction_id,
            "bookingId": b.id,
            "status": "FAILED",
            "verified": False,
        }
        db.refresh(b)
        assert b.status == "PAYMENT_FAILED"

    def test_still_pending(self, db, cache, gateway, notifier, make_booking, pay):
        p = pay(make_booking())
        gateway.verify_transaction.return_value = {"status": "ongoing"}
        out = payment_service.verify_payment(db, cache, gateway, notifier, p.transaction_id)
        assert out["status"] == "PENDING"
        assert out["verified"] is False

    def test_gateway_error(self, db, cache, gateway, notifier, make_booking, pay):
        p = pay(make_booking())
        gateway.verify_transaction.side_effect = GatewayError("timeout")
        with pytest.raises(UpstreamError):
            payment_service.verify_payment(db, cache, gateway, notifier, p.transaction_id)


class TestRefund:
    def test_refund_completed_payment(self, db, cache, notifier, make_booking, pay, deliver):
        b = make_booking()
        p = pay(b)
        deliver(_event("charge.success", p.transaction_id))

        p = payment_service.refund_payment(db, cache, notifier, p.id, Decimal("200.00"), actor="admin-1")

        assert p.status == "REFUNDED"
        assert p.payment_data["refundedAmount"] == "200.00"
        db.refresh(b)
        assert b.status == "REFUNDED"
        notifier.payment_refunded.assert_called_once()

    def test_refund_requires_completed(self, db, cache, notifier, make_booking, pay):
        p = pay(make_booking())
        with pytest.raises(ConflictError):
            payment_service.refund_payment(db, cache, notifier, p.id)

    def test_refund_over_amount(self, db, cache, notifier, make_booking, pay, deliver):
        p = pay(make_booking())
        deliver(_event("charge.success", p.transaction_id))
        with pytest.raises(ValidationError):
            payment_service.refund_payment(db, cache, notifier, p.id, Decimal("600.00"))


def test_list_user_payments(db, gateway, make_booking):
    b = make_booking(user_id="u1")
    payment_service.initialize_payment(db, gateway, b.id, Decimal("500.00"), "GHS", "a@b.io", user_id="u1")
    assert [p.booking_id for p in payment_service.list_user_payments(db, "u1")] == [b.id]
    assert payment_service.list_user_payments(db, "u2") == []
