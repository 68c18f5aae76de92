"""
One-time email codes for guest checkout, registration and passwordless login.

Codes are stored only as a SHA-256 hash under `{purpose}_otp_{email}`; issuing a new
code for the same purpose and email overwrites the previous one. The store handed in
is normally the fallback store, so verification keeps working on this instance while
redis is down.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import generate_otp_code, hash_otp_code, otp_matches, random_password_hash
from app.errors import ConflictError
from app.models.user import User
from app.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class OtpPurpose(str, Enum):
    GUEST = "guest"
    REGISTER = "register"
    LOGIN = "login"


class OtpOutcome(str, Enum):
    VERIFIED = "VERIFIED"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def otp_key(purpose: OtpPurpose, email: str) -> str:
    return f"{OtpPurpose(purpose).value}_otp_{normalize_email(email)}"


def issue_otp(kv: KeyValueStore, notifier, purpose: OtpPurpose, email: str) -> datetime:
    """Store a fresh code and mail it. Only the expiry is returned to the caller."""
    key = otp_key(purpose, email)
    ttl = settings.OTP_TTL_SECONDS
    code = generate_otp_code()
    kv.set(key, hash_otp_code(code), ttl)
    logger.info("issued otp %s", key)
    notifier.otp_code(normalize_email(email), code, OtpPurpose(purpose).value, ttl // 60)
    return datetime.now(timezone.utc) + timedelta(seconds=ttl)


def verify_otp(kv: KeyValueStore, purpose: OtpPurpose, email: str, code: str) -> OtpOutcome:
    key = otp_key(purpose, email)
    stored = kv.get(key)
    if not stored:
        logger.info("otp %s missing or expired", key)
        return OtpOutcome.EXPIRED
    if not otp_matches(code, stored):
        logger.warning("otp %s mismatch", key)
        return OtpOutcome.INVALID
    kv.delete(key)
    logger.info("otp %s verified", key)
    return OtpOutcome.VERIFIED


def _user_by_email(db: Session, email: str) -> User | None:
    return db.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()


def _email_in_use(email: str) -> ConflictError:
    return ConflictError(
        "Email already in use. Please use a different email or login.",
        code="EMAIL_IN_USE",
        details={"email": normalize_email(email)},
    )


def request_otp(db: Session, kv: KeyValueStore, notifier, purpose: OtpPurpose, email: str) -> datetime:
    purpose = OtpPurpose(purpose)
    if purpose is OtpPurpose.LOGIN:
        return request_login_otp(db, kv, notifier, email)
    user = _user_by_email(db, email)
    if user and not user.is_guest:
        raise _email_in_use(email)
    return issue_otp(kv, notifier, purpose, email)


def request_login_otp(db: Session, kv: KeyValueStore, notifier, email: str) -> datetime:
    user = _user_by_email(db, email)
    if not user or not user.is_active:
        # same response shape whether or not the account exists
        logger.info("login otp requested for unknown account")
        return datetime.now(timezone.utc) + timedelta(seconds=settings.OTP_TTL_SECONDS)
    return issue_otp(kv, notifier, OtpPurpose.LOGIN, email)


def verify_login_otp(db: Session, kv: KeyValueStore, email: str, code: str) -> tuple[OtpOutcome, User | None]:
    outcome = verify_otp(kv, OtpPurpose.LOGIN, email, code)
    if outcome is not OtpOutcome.VERIFIED:
        return outcome, None
    user = _user_by_email(db, email)
    if not user or not user.is_active:
        return OtpOutcome.INVALID, None
    user.last_login_at = datetime.now(timezone.utc)
    user.is_email_verified = True
    db.commit()
    return outcome, user


def verify_guest_otp(db: Session, kv: KeyValueStore, email: str, code: str) -> tuple[OtpOutcome, User | None]:
    outcome = verify_otp(kv, OtpPurpose.GUEST, email, code)
    if outcome is not OtpOutcome.VERIFIED:
        return outcome, None
    user = _user_by_email(db, email)
    if user and not user.is_guest:
        raise _email_in_use(email)
    if not user:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            full_name="Guest",
            password_hash=random_password_hash(),
            is_guest=True,
            is_email_verified=True,
        )
        db.add(user)
        db.commit()
        logger.info("guest user %s created", user.id)
    return outcome, user


def verify_register_otp(db: Session, kv: KeyValueStore, email: str, code: str,
                        full_name: str | None = None) -> tuple[OtpOutcome, User | None]:
    outcome = verify_otp(kv, OtpPurpose.REGISTER, email, code)
    if outcome is not OtpOutcome.VERIFIED:
        return outcome, None
    user = _user_by_email(db, email)
    if user and not user.is_guest:
        raise _email_in_use(email)
    now = datetime.now(timezone.utc)
    if user:
        user.is_guest = False
        user.full_name = full_name or user.full_name
        logger.info("guest user %s upgraded to registered", user.id)
    else:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            full_name=full_name or "",
            password_hash=random_password_hash(),
        )
        db.add(user)
        logger.info("registered new user for %s", normalize_email(email))
    user.is_email_verified = True
    user.last_login_at = now
    db.commit()
    return outcome, user


def verify_otp_for_user(db: Session, kv: KeyValueStore, purpose: OtpPurpose, email: str, code: str,
                        full_name: str | None = None) -> tuple[OtpOutcome, User | None]:
    purpose = OtpPurpose(purpose)
    if purpose is OtpPurpose.LOGIN:
        return verify_login_otp(db, kv, email, code)
    if purpose is OtpPurpose.GUEST:
        return verify_guest_otp(db, kv, email, code)
    return verify_register_otp(db, kv, email, code, full_name)
