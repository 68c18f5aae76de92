from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

import requests

from app.core.config import settings


@dataclass
class PaystackConfig:
    base_url: str           # https://api.paystack.co
    secret_key: str
    timeout: int = 25


class GatewayError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


def to_minor_units(amount: Decimal) -> int:
    """Paystack amounts are in the smallest currency unit (kobo, pesewas, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | str) -> Decimal:
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


class PaystackClient:
    """PaymentGateway backed by the Paystack transactions API."""

    def __init__(self, cfg: PaystackConfig, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        headers = {
            "Authorization": f"Bearer {self.cfg.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            r = self.session.request(method=method.upper(), url=url, json=payload, headers=headers, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise GatewayError(f"Paystack {method} {path} failed: {e}") from e
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code >= 400 or data.get("status") is False:
            raise GatewayError(f"Paystack {r.status_code}: {data.get('message') or data}", status_code=r.status_code, payload=data)
        return data.get("data") or {}

    def initialize_transaction(self, *, reference: str, amount: Decimal, currency: str, email: str,
                               callback_url: str | None = None, metadata: dict | None = None) -> dict:
        payload = {
            "reference": reference,
            "amount": to_minor_units(amount),
            "currency": currency,
            "email": email,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url
        data = self.request("POST", "/transaction/initialize", payload)
        return {
            "authorization_url": data.get("authorization_url", ""),
            "access_code": data.get("access_code", ""),
            "reference": data.get("reference", reference),
        }

    def verify_transaction(self, reference: str) -> dict:
        """Returns the gateway's transaction record: status is success | failed | abandoned | ongoing | ..."""
        return self.request("GET", f"/transaction/verify/{reference}")


_client: PaystackClient | None = None


def get_payment_gateway() -> PaystackClient:
    global _client
    if _client is None:
        _client = PaystackClient(PaystackConfig(
            base_url=settings.PAYSTACK_BASE_URL,
            secret_key=settings.PAYSTACK_SECRET_KEY,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        ))
    return _client
