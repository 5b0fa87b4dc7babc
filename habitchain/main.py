"""
habitchain/main.py
Composition root: settings, logging, store, cache, services, routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from habitchain import __version__
from habitchain.api import chains, habits, health, rewards, sessions, stats
from habitchain.core.cache import Cache, build_cache
from habitchain.core.config import Settings, settings, validate_config
from habitchain.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from habitchain.core.logging import configure_logging
from habitchain.core.middleware.request_id import RequestIdMiddleware
from habitchain.core.rate_limit import RateLimitMiddleware
from habitchain.core.store import Store, build_store
from habitchain.core.validation import validate_env
from habitchain.features.actions import UserActions
from habitchain.features.insights.service import InsightWriter
from habitchain.workers.reward_worker import build_drain_submitter


def create_app(
    settings_obj: Optional[Settings] = None,
    store: Optional[Store] = None,
    cache: Optional[Cache] = None,
    actions: Optional[UserActions] = None,
) -> FastAPI:
    """
    Build the app. Handles passed in are used as-is and left open on
    shutdown; handles built here are closed by the lifespan.
    """
    cfg = settings_obj or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("habitchain")
        logger.info("Starting habitchain...")
        owned = []
        app_store = store
        app_cache = cache
        if actions is not None:
            app_store = app_store or actions.store
            app_cache = app_cache or actions.cache
        if app_store is None:
            app_store = build_store(settings_obj=cfg)
            owned.append(app_store)
        if app_cache is None:
            app_cache = build_cache(settings_obj=cfg)
            owned.append(app_cache)

        app.state.settings = cfg
        app.state.store = app_store
        app.state.cache = app_cache
        app.state.actions = actions or UserActions(
            app_store,
            app_cache,
            settings_obj=cfg,
            insight_writer=InsightWriter(settings_obj=cfg),
            drain_submitter=build_drain_submitter(cfg) if cfg.REWARD_POSTING_MODE == "deferred" else None,
        )
        try:
            yield
        finally:
            for handle in owned:
                handle.close()
            logger.info("Stopping habitchain...")

    app = FastAPI(title="habitchain", version=__version__, lifespan=lifespan)

    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(habits.router)
    app.include_router(chains.router)
    app.include_router(sessions.router)
    app.include_router(rewards.router)
    app.include_router(stats.router)
    app.include_router(health.router)
    return app


def build_app() -> FastAPI:
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_env()
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))
    return create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("habitchain.main:build_app", factory=True, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
