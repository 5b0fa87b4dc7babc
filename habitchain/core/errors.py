"""Error taxonomy, operation results and HTTP handlers."""

import logging
from typing import Any, Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException
from starlette.requests import Request

from habitchain.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

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


class AuthError(AppError):
    code = "unauthenticated"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class AlreadyCompletedError(ConflictError):
    """A completion already exists for this habit on this day."""
    code = "already_completed"


class ActiveSessionExistsError(ConflictError):
    code = "active_session_exists"

    def __init__(self, message: str, *, active_session_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.active_session_id = active_session_id


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class ConcurrentUpdateError(ConflictError):
    """Compare-and-swap lost against a concurrent writer."""
    code = "concurrent_update"


class NotCompletedError(AppError):
    code = "not_completed"
    status_code = 409


class NotPausedError(AppError):
    code = "not_paused"
    status_code = 409


class NotOnBreakError(NotPausedError):
    code = "not_on_break"


class TransientStoreError(AppError):
    """Store or cache I/O failed or timed out; safe to retry."""
    code = "store_unavailable"
    status_code = 503


class RewardAwardFailure(AppError):
    """Reward posting failed after progress was committed. Logged, never unwound."""
    code = "reward_award_failed"
    status_code = 500


class ConfigError(AppError, ValueError):
    code = "config_error"
    status_code = 500


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class OperationResult(BaseModel):
    """Discriminated result returned across the action boundary."""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None
    status_code: int = 200

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: AppError) -> "OperationResult":
        data = None
        if isinstance(exc, ActiveSessionExistsError) and exc.active_session_id:
            data = {"activeSessionId": exc.active_session_id}
        return cls(success=False, data=data, error=exc.message, code=exc.code, status_code=exc.status_code)


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


def result_error_response(request: Request, result: OperationResult) -> JSONResponse:
    rid = _extract_request_id(request)
    payload = error_payload(result.code or "app_error", result.error or "Operation failed", rid)
    if result.data:
        payload["error"]["data"] = result.data
    response = JSONResponse(status_code=result.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("habitchain")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = error_payload(code, message, rid)
    logger = logging.getLogger("habitchain")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("habitchain")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
