"""
Error taxonomy and FastAPI handlers.

Services raise AppError subclasses; the handlers below turn them into

    {"error": {"code", "message", "request_id", "reason"?, "details"?}, "detail": message}

`code` is fixed per class so clients can branch on it. `reason` narrows a
code (e.g. validation_error / invalid_grade) and `details` carries
structured context such as the available balance.
"""

import builtins
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tokenbank.core.logging import get_request_id

logger = logging.getLogger("tokenbank")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.details = details or {}
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidQuantityError(ValidationError):
    """Custom plan token quantity below the grade minimum."""
    code = "invalid_quantity"


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class UnauthorizedError(PermissionError):
    """Actor does not own the resource or lacks operator privilege."""
    code = "unauthorized"


class GradeNotAllowedError(PermissionError):
    code = "grade_not_allowed"


class QuotaExhaustedError(PermissionError):
    code = "quota_exhausted"


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class PaymentSlotsExhaustedError(ConflictError):
    code = "payment_slots_exhausted"


class InvalidStateError(AppError):
    """Operation not valid for the payment's current status."""
    code = "invalid_state"
    status_code = 409


class InsufficientBalanceError(AppError):
    code = "insufficient_balance"
    status_code = 402

    def __init__(self, message: str, *, available: int, requested: int, **kwargs):
        kwargs.setdefault("details", {"available": available, "requested": requested})
        super().__init__(message, **kwargs)
        self.available = available
        self.requested = requested


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _render(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    *,
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if reason:
        error["reason"] = reason
    if details:
        error["details"] = details
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={
            "request_id": rid,
            "error_code": exc.code,
            "reason": exc.reason,
            "error_message": exc.message,
            "status": exc.status_code,
        },
    )
    return _render(rid, exc.status_code, exc.code, exc.message, reason=exc.reason, details=exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = _render(rid, exc.status_code, code, message)
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and query strings share the 400 validation_error contract."""
    rid = _extract_request_id(request)
    fields = [
        {"loc": [str(part) for part in err.get("loc", ())], "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    message = fields[0]["message"] if fields else "Invalid request"
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return _render(rid, 400, "validation_error", message, reason="invalid_request", details={"fields": fields})


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _render(rid, 500, "internal_error", "Unexpected error")
