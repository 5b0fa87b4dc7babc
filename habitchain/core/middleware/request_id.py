"""
Request correlation and access logging.

Each request gets an id (the caller's X-Request-Id when it is sane, a fresh
uuid otherwise) that is echoed on the response and bound into log context.
Health checks log at debug so they do not flood the access log.
"""
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from habitchain.core.logging import latency_bucket_ms, log_event, request_id_ctx_var, user_id_ctx_var

QUIET_PATHS = frozenset({"/healthz", "/readyz"})

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _request_id_from(value):
    if value and _SAFE_REQUEST_ID.match(value):
        return value
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _request_id_from(request.headers.get(self.header_name))
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        user_token = user_id_ctx_var.set(None)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            log_event(
                "error",
                "request.failed",
                request_id=rid,
                user_id=getattr(request.state, "user_id", None),
                error_code="internal_error",
                extra={"method": request.method, "path": request.url.path},
            )
            raise
        finally:
            request_id_ctx_var.reset(rid_token)
            user_id_ctx_var.reset(user_token)
        elapsed_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        status = response.status_code
        if request.url.path in QUIET_PATHS and status < 500:
            level = "debug"
        else:
            level = "error" if status >= 500 else "info"
        log_event(
            level,
            "request.complete",
            request_id=rid,
            user_id=getattr(request.state, "user_id", None),
            event_type=f"http.{request.method.lower()}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "latency_ms": round(elapsed_ms, 1),
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
