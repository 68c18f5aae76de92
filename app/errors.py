from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error carrying an HTTP status, a stable machine code and caller-facing details."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "INVALID_STATE_TRANSITION"


class UpstreamError(AppError):
    """Provider or gateway failure, including business rejections (price changed, no seats)."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class ExpiredError(AppError):
    status_code = 410
    code = "EXPIRED"


def price_changed(original: Any, current: Any, currency: str) -> UpstreamError:
    return UpstreamError(
        f"Flight price has changed from {original} to {current}. Please confirm the new price.",
        code="PRICE_CHANGED",
        status_code=409,
        details={"originalPrice": str(original), "newPrice": str(current), "currency": currency},
    )


def seats_unavailable(offer_id: str) -> UpstreamError:
    return UpstreamError(
        "Seats are no longer available for this flight. Please choose another flight.",
        code="SEATS_UNAVAILABLE",
        status_code=409,
        details={"offerId": offer_id},
    )


def offer_expired(offer_id: str) -> ExpiredError:
    return ExpiredError(
        "This flight offer has expired. Please search again.",
        code="OFFER_EXPIRED",
        details={"offerId": offer_id},
    )
