import logging
import threading
import time
from dataclasses import dataclass

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class AmadeusConfig:
    host: str               # test.api.amadeus.com OR api.amadeus.com
    client_id: str
    client_secret: str
    timeout: int = 25


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: dict | None = None,
                 expired: bool = False, timeout: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.expired = expired
        self.timeout = timeout


def _looks_expired(payload: dict) -> bool:
    for err in payload.get("errors") or []:
        text = f"{err.get('title', '')} {err.get('detail', '')}".lower()
        if "expired" in text or "no longer available" in text:
            return True
    return False


class AmadeusClient:
    """OfferProvider backed by the Amadeus Self-Service REST API (client-credentials OAuth)."""

    def __init__(self, cfg: AmadeusConfig, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _access_token(self) -> str:
        with self._token_lock:
            # refresh a little early so a token never expires mid-request
            if self._token and time.monotonic() < self._token_expires_at - 30:
                return self._token
            try:
                r = self.session.post(
                    f"https://{self.cfg.host}/v1/security/oauth2/token",
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self.cfg.client_id,
                        "client_secret": self.cfg.client_secret,
                    },
                    timeout=self.cfg.timeout,
                )
            except requests.Timeout as e:
                raise ProviderError("Amadeus auth timed out", timeout=True) from e
            except requests.RequestException as e:
                raise ProviderError(f"Amadeus auth failed: {e}") from e
            if r.status_code >= 400:
                raise ProviderError(f"Amadeus auth {r.status_code}", status_code=r.status_code)
            data = r.json()
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + int(data.get("expires_in", 1799))
            logger.debug("Amadeus access token refreshed")
            return self._token

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"https://{self.cfg.host}{path}"
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            r = self.session.request(method=method.upper(), url=url, json=payload, headers=headers, timeout=self.cfg.timeout)
        except requests.Timeout as e:
            raise ProviderError(f"Amadeus {method} {path} timed out after {self.cfg.timeout}s", timeout=True) from e
        except requests.RequestException as e:
            raise ProviderError(f"Amadeus {method} {path} failed: {e}") from e
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code >= 400:
            raise ProviderError(
                f"Amadeus {r.status_code}: {data}",
                status_code=r.status_code,
                payload=data,
                expired=_looks_expired(data),
            )
        return data

    def price_offer(self, offer: dict) -> dict:
        """Re-price one flight offer. Returns the provider's priced offer."""
        payload = {"data": {"type": "flight-offers-pricing", "flightOffers": [offer]}}
        data = self.request("POST", "/v1/shopping/flight-offers/pricing", payload)
        offers = (data.get("data") or {}).get("flightOffers") or []
        if not offers:
            raise ProviderError("Amadeus pricing returned no offers", payload=data)
        return offers[0]

    def create_order(self, offer: dict, travelers: list[dict]) -> dict:
        payload = {"data": {"type": "flight-order", "flightOffers": [offer], "travelers": travelers}}
        data = self.request("POST", "/v1/booking/flight-orders", payload)
        order = data.get("data") or {}
        if not order.get("id"):
            raise ProviderError("Amadeus order response missing id", payload=data)
        return order


_client: AmadeusClient | None = None


def get_offer_provider() -> AmadeusClient:
    global _client
    if _client is None:
        _client = AmadeusClient(AmadeusConfig(
            host=settings.AMADEUS_HOST,
            client_id=settings.AMADEUS_CLIENT_ID,
            client_secret=settings.AMADEUS_CLIENT_SECRET,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        ))
    return _client
