from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.core.security import decode_token
from app.models.user import User
from app.services.amadeus_client import get_offer_provider
from app.services.booking_service import BookingCache
from app.services.email_service import EmailNotifier
from app.services.kv_store import KeyValueStore, get_booking_cache, get_ephemeral_store
from app.services.paystack_client import get_payment_gateway

bearer = HTTPBearer(auto_error=False)

def _user_from_token(token: str, db: Session) -> User:
    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(User, payload.get("sub"))
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user

def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _user_from_token(creds.credentials, db)

def get_optional_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User | None:
    """Guest checkout: no header means anonymous, a bad token is still rejected."""
    if not creds:
        return None
    return _user_from_token(creds.credentials, db)

def require_roles(*roles: str):
    def _guard(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return _guard

def get_kv() -> KeyValueStore:
    return get_ephemeral_store()

def get_cache() -> BookingCache:
    return BookingCache(get_booking_cache())

def get_provider():
    return get_offer_provider()

def get_gateway():
    return get_payment_gateway()

def get_notifier(db: Session = Depends(get_db)) -> EmailNotifier:
    return EmailNotifier(db)
