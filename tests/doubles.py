from datetime import datetime, timedelta, timezone

from app.services.kv_store import KeyValueStore, StoreUnavailable


class DownStore(KeyValueStore):
    """Store double for a backend outage: every call raises StoreUnavailable."""

    def __init__(self):
        self.calls = 0

    def get(self, key):
        self.calls += 1
        raise StoreUnavailable("connection refused")

    def set(self, key, value, ttl):
        self.calls += 1
        raise StoreUnavailable("connection refused")

    def delete(self, key):
        self.calls += 1
        raise StoreUnavailable("connection refused")


def expire_hold(db, booking) -> None:
    booking.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.commit()


PASSENGER = {
    "firstName": "Ama",
    "lastName": "Mensah",
    "dateOfBirth": "1990-04-12",
    "gender": "FEMALE",
    "email": "ama@example.com",
    "phone": "+233200000000",
}
