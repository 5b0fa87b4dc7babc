"""
Derived-Stats Aggregator

Stats are recomputed from the habit ledger and cached per user next to a
content hash of their inputs (timezone, local day, habit ids, completion
arrays, stored streak and updated_at). A cached payload is served only while that hash still
matches, so any completion change invalidates it on the next read.

A short-TTL "generating" marker stops concurrent reads from recomputing the
same user twice. It is advisory: a crashed process just lets it expire, and
losing the race only costs redundant work. Cache failures count as misses.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Callable, List, Optional

from habitchain.core.cache import Cache
from habitchain.core.errors import TransientStoreError, ValidationError
from habitchain.core.logging import log_event
from habitchain.core.store import UnitOfWork
from habitchain.features.insights.service import InsightWriter
from habitchain.features.schedule.evaluator import day_key
from habitchain.features.stats.models import HabitAnalytics, HabitStats
from habitchain.features.stats.rollups import build_analytics, build_stats
from habitchain.models.habit import Habit

MAX_ANALYTICS_DAYS = 365


def hash_key(user_id: str) -> str:
    return f"stats:hash:{user_id}"


def data_key(user_id: str) -> str:
    return f"stats:data:{user_id}"


def status_key(user_id: str) -> str:
    return f"stats:status:{user_id}"


def content_hash(habits: List[Habit], tz_name: str = "", today: str = "") -> str:
    """Payloads bucket by local day, so the zone and today's key are inputs too."""
    material: list = [tz_name, today]
    material += [
        [
            habit.id,
            [c.model_dump(mode="json") for c in sorted(habit.completions, key=lambda c: c.day_key)],
            habit.streak,
            habit.updated_at.isoformat(),
        ]
        for habit in sorted(habits, key=lambda h: h.id)
    ]
    return hashlib.sha256(json.dumps(material, sort_keys=True).encode("utf-8")).hexdigest()


class StatsAggregator:
    def __init__(
        self,
        cache: Cache,
        insight_writer: Optional[InsightWriter] = None,
        cache_ttl_seconds: int = 30 * 60,
        hash_ttl_seconds: int = 24 * 60 * 60,
        marker_ttl_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.insight_writer = insight_writer
        self.cache_ttl_seconds = cache_ttl_seconds
        self.hash_ttl_seconds = hash_ttl_seconds
        self.marker_ttl_seconds = marker_ttl_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # cache access; every failure degrades to a miss

    def _get(self, key: str) -> Optional[str]:
        try:
            return self.cache.get(key)
        except TransientStoreError as exc:
            log_event("warning", "stats.cache.read_failed", error_code=exc.code, extra={"key": key})
            return None

    def _put(self, user_id: str, stats: HabitStats) -> None:
        try:
            self.cache.setex(data_key(user_id), self.cache_ttl_seconds, stats.model_dump_json())
            self.cache.setex(hash_key(user_id), self.hash_ttl_seconds, stats.content_hash)
        except TransientStoreError as exc:
            log_event("warning", "stats.cache.write_failed", user_id=user_id, error_code=exc.code)

    def _mark_generating(self, user_id: str) -> bool:
        try:
            return self.cache.set_nx(status_key(user_id), "generating", self.marker_ttl_seconds)
        except TransientStoreError:
            return True

    def _clear_marker(self, user_id: str) -> None:
        try:
            self.cache.delete(status_key(user_id))
        except TransientStoreError:
            pass  # expires on its own

    def invalidate(self, user_id: str) -> None:
        try:
            self.cache.delete(hash_key(user_id), data_key(user_id))
        except TransientStoreError as exc:
            log_event("warning", "stats.cache.invalidate_failed", user_id=user_id, error_code=exc.code)

    # ------------------------------------------------------------------

    def get_stats(self, uow: UnitOfWork, user_id: str, tz_name: str, force_refresh: bool = False) -> HabitStats:
        habits = uow.habits.list(user_id)
        now = self.clock()
        current_hash = content_hash(habits, tz_name, day_key(now, tz_name))

        cached_payload = self._get(data_key(user_id))
        cached = HabitStats.model_validate_json(cached_payload) if cached_payload else None
        cached_hash = self._get(hash_key(user_id))

        if cached and not force_refresh and cached_hash == current_hash:
            return cached.model_copy(update={"from_cache": True, "stale": False})

        owns_marker = self._mark_generating(user_id)
        if not owns_marker and cached is not None:
            # Another request is regenerating; hand back what we have.
            log_event("info", "stats.generation_in_progress", user_id=user_id, event_type="stats.read")
            return cached.model_copy(update={"from_cache": True, "stale": True})

        try:
            stats = build_stats(user_id, habits, tz_name, now)
            stats.content_hash = current_hash
            if self.insight_writer is not None:
                stats.insights = self.insight_writer.write(stats)
            self._put(user_id, stats)
        finally:
            # Leave a marker set by another request alone.
            if owns_marker:
                self._clear_marker(user_id)

        log_event(
            "info",
            "stats.generated",
            user_id=user_id,
            event_type="stats.generated",
            extra={"habits": stats.total_habits, "was_stale": cached is not None},
        )
        return stats

    def analytics(self, uow: UnitOfWork, user_id: str, tz_name: str, days: int = 30) -> HabitAnalytics:
        if not 1 <= days <= MAX_ANALYTICS_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_ANALYTICS_DAYS}")
        return build_analytics(user_id, uow.habits.list(user_id), tz_name, self.clock(), days)
