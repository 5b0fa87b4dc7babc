"""Fixed-window rate limiting for mutating routes, counted in the shared cache."""

import time
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from habitchain.core.cache import Cache
from habitchain.core.errors import RateLimitError, TransientStoreError, app_error_handler
from habitchain.core.logging import get_request_id, log_event

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
LIMITED_PREFIX = "/v1/"
WINDOW_SECONDS = 60


class FixedWindowLimiter:
    def __init__(self, cache: Cache, limit_per_minute: int, time_fn: Optional[Callable[[], float]] = None):
        self.cache = cache
        self.limit = limit_per_minute
        self.time_fn = time_fn or time.time

    def allow(self, key: str) -> bool:
        window = int(self.time_fn() // WINDOW_SECONDS)
        try:
            count = self.cache.incr_window(f"ratelimit:{key}:{window}", WINDOW_SECONDS)
        except TransientStoreError as exc:
            # Fail open: the cache is only a hint.
            log_event("warning", "ratelimit.cache_unavailable", error_code=exc.code)
            return True
        return count <= self.limit


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Reads its cache and limit from app.state at request time so the
    composition root can build them in the lifespan.
    """

    def __init__(self, app, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.time_fn = time_fn

    def _client_key(self, request: Request) -> str:
        who = request.headers.get("x-user-id") or request.headers.get("x-forwarded-for") or (
            request.client.host if request.client else "unknown"
        )
        return f"{who}:{request.url.path}"

    async def dispatch(self, request: Request, call_next):
        state = request.app.state
        cfg = getattr(state, "settings", None)
        cache = getattr(state, "cache", None)
        limit = getattr(cfg, "RATE_LIMIT_PER_MINUTE", 0) if cfg else 0

        if (
            not limit
            or cache is None
            or request.method not in MUTATING_METHODS
            or not request.url.path.startswith(LIMITED_PREFIX)
        ):
            return await call_next(request)

        limiter = FixedWindowLimiter(cache, limit, self.time_fn)
        if not limiter.allow(self._client_key(request)):
            rid = getattr(request.state, "request_id", None) or get_request_id()
            return await app_error_handler(
                request,
                RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
            )
        return await call_next(request)
