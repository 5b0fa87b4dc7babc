"""Liveness and readiness checks. Nothing here touches user data."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness: store and cache reachable."""
    store = request.app.state.store
    cache = request.app.state.cache
    checks = {
        "store": {"backend": store.backend, "ok": store.ping()},
        "cache": {"backend": cache.backend, "ok": cache.ping()},
    }
    ok = all(c["ok"] for c in checks.values())
    return JSONResponse(status_code=200 if ok else 503, content={"ok": ok, "checks": checks})
