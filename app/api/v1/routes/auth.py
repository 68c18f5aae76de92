from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.schemas.auth import OtpIssued, OtpRequest, OtpVerifyOut, OtpVerifyRequest
from app.models.user import User
from app.core.security import create_access_token
from app.api.deps import get_current_user, get_kv, get_notifier
from app.services.email_service import EmailNotifier
from app.services.kv_store import KeyValueStore
from app.services.otp_service import OtpOutcome, OtpPurpose, request_otp, verify_otp_for_user

router = APIRouter(tags=["auth"])

@router.post("/auth/otp/{purpose}", response_model=OtpIssued)
def request_code(purpose: OtpPurpose, body: OtpRequest,
                 db: Session = Depends(get_db),
                 kv: KeyValueStore = Depends(get_kv),
                 notifier: EmailNotifier = Depends(get_notifier)):
    return OtpIssued(expiresAt=request_otp(db, kv, notifier, purpose, body.email))

@router.post("/auth/otp/{purpose}/verify", response_model=OtpVerifyOut)
def verify_code(purpose: OtpPurpose, body: OtpVerifyRequest,
                db: Session = Depends(get_db),
                kv: KeyValueStore = Depends(get_kv)):
    outcome, user = verify_otp_for_user(db, kv, purpose, body.email, body.code, body.fullName)
    if outcome is not OtpOutcome.VERIFIED or user is None:
        return OtpVerifyOut(outcome=outcome.value)
    token = create_access_token(user.id, guest=user.is_guest)
    return OtpVerifyOut(outcome=outcome.value, accessToken=token, userId=user.id)

@router.get("/auth/me")
def me(me: User = Depends(get_current_user)):
    return {
        "id": me.id,
        "email": me.email,
        "fullName": me.full_name or "",
        "role": me.role,
        "isGuest": me.is_guest,
    }
