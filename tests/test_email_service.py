from unittest.mock import MagicMock

import pytest

from app.models.email_log import EmailLog
from app.services import email_service


@pytest.fixture
def sender(monkeypatch):
    send = MagicMock()
    monkeypatch.setattr(email_service, "send_email", send)
    return send


class TestQueueEmail:
    def test_sent_immediately(self, db, sender):
        eid = email_service.queue_email(db, "ama@example.com", "booking_created", "Hi", "body", "JT123456")
        log = db.get(EmailLog, eid)
        assert log.status == "sent"
        assert log.attempts == 1
        assert log.sent_at is not None
        sender.assert_called_once_with("ama@example.com", "Hi", "body")

    def test_send_failure_is_left_for_retry(self, db, sender):
        sender.side_effect = OSError("smtp down")
        eid = email_service.queue_email(db, "ama@example.com", "booking_created", "Hi", "body")
        log = db.get(EmailLog, eid)
        assert log.status == "failed"
        assert log.body == "body"


class TestProcessPending:
    def test_retries_failed_rows(self, db, sender):
        sender.side_effect = OSError("smtp down")
        email_service.queue_email(db, "ama@example.com", "booking_created", "Hi", "body")
        sender.side_effect = None

        assert email_service.process_pending_emails(db) == {"processed": 1, "sent": 1, "failed": 0}
        log = db.query(EmailLog).one()
        assert log.status == "sent"
        assert log.attempts == 2

    def test_codes_without_body_are_not_retried(self, db, sender):
        sender.side_effect = OSError("smtp down")
        email_service.queue_email(db, "ama@example.com", "otp_code", "Code", "123456", store_body=False)
        assert email_service.process_pending_emails(db)["processed"] == 0

    def test_gives_up_after_max_attempts(self, db, sender):
        sender.side_effect = OSError("smtp down")
        email_service.queue_email(db, "ama@example.com", "booking_created", "Hi", "body")
        for _ in range(email_service.MAX_SEND_ATTEMPTS):
            email_service.process_pending_emails(db)
        log = db.query(EmailLog).one()
        assert log.attempts == email_service.MAX_SEND_ATTEMPTS
        assert email_service.process_pending_emails(db)["processed"] == 0


class TestNotifier:
    def test_never_raises(self, db, monkeypatch):
        monkeypatch.setattr(email_service, "queue_email", MagicMock(side_effect=RuntimeError("db gone")))
        booking = MagicMock(contact_email="ama@example.com", booking_reference="JT123456", status="CONFIRMED")
        email_service.EmailNotifier(db).payment_confirmed(booking, "500.00", "GHS")

    def test_missing_recipient_skipped(self, db, sender):
        booking = MagicMock(contact_email="", booking_reference="JT123456")
        email_service.EmailNotifier(db).booking_cancelled(booking)
        sender.assert_not_called()
        assert db.query(EmailLog).count() == 0

    def test_payment_confirmed_content(self, db, sender):
        booking = MagicMock(contact_email="ama@example.com", booking_reference="JT123456", status="CONFIRMED")
        email_service.EmailNotifier(db).payment_confirmed(booking, "500.00", "GHS")
        _, subject, body = sender.call_args[0]
        assert "JT123456" in subject
        assert "500.00 GHS" in body
        assert db.query(EmailLog).one().related_booking_ref == "JT123456"


def test_worker_job_drains_queue(engine, monkeypatch, sender):
    from sqlalchemy.orm import sessionmaker

    from app.tasks import worker_jobs

    monkeypatch.setattr(worker_jobs, "SessionLocal", sessionmaker(bind=engine))
    assert worker_jobs.process_email_queue(limit=10) == {"processed": 0, "sent": 0, "failed": 0}
