"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from yomi.exceptions import (
    AdminRequired, AlreadyBet, IncompleteResolution, InsufficientBalance,
    InvalidSelection, InvalidStake, MarketClosed, MarketNotClosed,
    MarketNotFound, NotAuthenticated, OutcomesMissing, ProfileNotFound,
    ReconciliationRequired, ResolutionInProgress, ValidationError,
    WriteFailure,
)


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


# Most specific first; ValidationError is the catch-all for bad input.
_ERROR_MAP = [
    (InvalidStake, 400, "invalid_amount"),
    (InvalidSelection, 400, "invalid_outcome"),
    (IncompleteResolution, 400, "incomplete_resolution"),
    (InsufficientBalance, 400, "insufficient_balance"),
    (MarketClosed, 400, "market_closed"),
    (OutcomesMissing, 400, "market_closed"),
    (NotAuthenticated, 401, "auth_required"),
    (AdminRequired, 403, "admin_required"),
    (MarketNotFound, 404, "market_not_found"),
    (ProfileNotFound, 404, "profile_not_found"),
    (AlreadyBet, 409, "already_bet"),
    (MarketNotClosed, 409, "market_not_closed"),
    (ResolutionInProgress, 409, "resolution_in_progress"),
    (ReconciliationRequired, 500, "reconciliation_required"),
    (WriteFailure, 500, "write_failed"),
    (ValidationError, 400, "bad_request"),
]


def translate_engine_error(exc: Exception) -> APIError:
    """Translate engine exceptions to structured API errors."""
    for exc_type, status, code in _ERROR_MAP:
        if isinstance(exc, exc_type):
            return APIError(status, code, str(exc))
    return APIError(400, "bad_request", str(exc))
