"""Map domain exceptions to HTTP responses."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from rental_engine.infra.payment_processor import WebhookSignatureError
from rental_engine.services.availability_ledger import ConflictError, ListingOwnershipError
from rental_engine.services.booking_service import (
    BookingAccessError,
    BookingNotFoundError,
    ListingUnavailableError,
)
from rental_engine.services.booking_state_machine import AlreadyTerminalError, InvalidTransitionError
from rental_engine.services.payment_orchestrator import (
    CautionHoldError,
    PaymentFailureError,
    RefundFailureError,
)
from rental_engine.services.pricing_engine import AddOnUnavailableError, InvalidRangeError
from rental_engine.services.verification_gate import (
    VerificationRequiredError,
    VerificationUnavailableError,
)

# Exception type -> (HTTP status, error code). Starlette picks the most specific match.
ERROR_MAP: list[tuple[type[Exception], int, str]] = [
    (InvalidRangeError, status.HTTP_400_BAD_REQUEST, "invalid_range"),
    (ConflictError, status.HTTP_409_CONFLICT, "dates_unavailable"),
    (AlreadyTerminalError, status.HTTP_409_CONFLICT, "already_terminal"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "invalid_transition"),
    (PaymentFailureError, status.HTTP_402_PAYMENT_REQUIRED, "payment_failed"),
    (RefundFailureError, status.HTTP_502_BAD_GATEWAY, "refund_failed"),
    (CautionHoldError, status.HTTP_409_CONFLICT, "caution_unavailable"),
    (AddOnUnavailableError, status.HTTP_400_BAD_REQUEST, "addon_unavailable"),
    (VerificationRequiredError, status.HTTP_403_FORBIDDEN, "verification_required"),
    (VerificationUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE, "verification_unavailable"),
    (BookingAccessError, status.HTTP_403_FORBIDDEN, "forbidden"),
    (ListingOwnershipError, status.HTTP_403_FORBIDDEN, "forbidden"),
    (BookingNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (ListingUnavailableError, status.HTTP_404_NOT_FOUND, "listing_unavailable"),
    (WebhookSignatureError, status.HTTP_400_BAD_REQUEST, "invalid_signature"),
    (LookupError, status.HTTP_404_NOT_FOUND, "not_found"),
    (ValueError, status.HTTP_400_BAD_REQUEST, "invalid_request"),
]


def error_response(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def register_exception_handlers(app: FastAPI) -> None:
    for exc_type, status_code, code in ERROR_MAP:

        async def handler(request: Request, exc: Exception, _status=status_code, _code=code) -> JSONResponse:
            return JSONResponse(status_code=_status, content=error_response(_code, str(exc)))

        app.add_exception_handler(exc_type, handler)
