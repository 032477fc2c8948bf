"""Error taxonomy and FastAPI handlers.

Only configuration and infrastructure faults are raised. Denials (limit,
budget, rate) are ordinary return values; the classes below for those codes
exist so callers can opt into raising via ``raise_if_denied()``.

Every error response has the shape
``{"error": {"code", "message", "request_id"}, "detail": message}``.
"""

import logging
from typing import Dict, Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from entitlement_engine.core.logging import get_request_id

logger = logging.getLogger("entitlements.http")


class AppError(Exception):
    code = "app_error"
    status_code = 500
    # seconds, sent as Retry-After when set
    retry_after: Optional[int] = None

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PlanNotFoundError(NotFoundError):
    pass


class TenantNotFoundError(NotFoundError):
    pass


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class UnknownResourceError(AppError):
    """A resource or feature key absent from every plan that applies. Configuration bug."""
    code = "unknown_resource"
    status_code = 422


class LimitExceeded(AppError):
    code = "limit_exceeded"
    status_code = 403


class BudgetExceeded(AppError):
    code = "budget_exceeded"
    status_code = 403


class RateLimited(AppError):
    code = "rate_limited"
    status_code = 429


class ReservationExpired(AppError):
    code = "reservation_expired"
    status_code = 409


class StorageUnavailable(AppError):
    code = "storage_unavailable"
    status_code = 503
    retry_after = 5


class PeriodClosedError(ConflictError):
    """The counter's period was frozen by rollover while the mutation was in flight."""
    code = "period_closed"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


def _error_response(status_code: int, code: str, message: str, rid: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=_error_payload(code, message, rid))
    response.headers["x-request-id"] = rid
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return _error_response(exc.status_code, exc.code, exc.message, rid, headers)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(exc.status_code, code, exc.detail or "HTTP error", rid, exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(500, "internal_error", "Unexpected error", rid)
