"""
Reward outbox worker.

In deferred posting mode, actions enqueue `drain_reward_outbox` on the
"rewards" RQ queue after each mutation. Run a worker with:

    rq worker rewards --url $REDIS_URL

The job is safe to run repeatedly; each intent is applied at most once.
"""
import logging
from typing import Callable, Optional

from redis import Redis
from rq import Queue

from habitchain.core.cache import build_cache
from habitchain.core.config import Settings, settings
from habitchain.core.store import build_store

logger = logging.getLogger("habitchain")

QUEUE_NAME = "rewards"


def drain_reward_outbox(limit: int = 100) -> dict:
    """RQ job: apply pending reward intents from the outbox."""
    from habitchain.features.actions import UserActions

    cfg = settings
    if not (cfg.TEST_DATABASE_URL or cfg.DATABASE_URL):
        # An in-memory outbox lives in the API process; a fresh one here is always empty.
        raise RuntimeError("drain_reward_outbox needs DATABASE_URL to reach the shared outbox")

    store = build_store(settings_obj=cfg)
    cache = build_cache(settings_obj=cfg)
    try:
        actions = UserActions(store, cache, settings_obj=cfg)
        report = actions.drain_rewards(limit=limit)
        logger.info(f"[reward_worker] drained outbox: {report}")
        return report
    finally:
        store.close()
        cache.close()


def build_drain_submitter(settings_obj: Optional[Settings] = None) -> Optional[Callable[[], str]]:
    """Return a callable that enqueues a drain, or None when Redis is not configured."""
    cfg = settings_obj or settings
    if not cfg.REDIS_URL:
        return None

    queue = Queue(QUEUE_NAME, connection=Redis.from_url(cfg.REDIS_URL, socket_timeout=cfg.CACHE_TIMEOUT_SECONDS))

    def submit() -> str:
        job = queue.enqueue(
            drain_reward_outbox,
            job_timeout="5m",
            result_ttl=3600,
        )
        return job.id

    return submit
