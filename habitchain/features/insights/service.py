"""
Insight text for the stats payload.

InsightWriter asks the Groq chat API for a few short observations about a
user's aggregate stats. Any failure (missing key, timeout, bad response)
falls back to deterministic rule-based text, so stats never wait on the
model and ledger state is never touched here.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional

from habitchain.core.config import Settings, settings
from habitchain.features.stats.models import HabitStats

logger = logging.getLogger("habitchain")

MAX_INSIGHTS = 3

SYSTEM_PROMPT = (
    "You are a supportive habit coach. Given JSON statistics about a user's habits, "
    "reply with at most three short observations, one per line, no numbering, "
    "each under 120 characters."
)


class InsightWriter:
    def __init__(self, client: Optional[Any] = None, model: Optional[str] = None, timeout_seconds: Optional[float] = None, settings_obj: Optional[Settings] = None):
        cfg = settings_obj or settings
        self.model = model or cfg.GROQ_MODEL
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else cfg.INSIGHTS_TIMEOUT_SECONDS
        self.client = client
        if self.client is None and cfg.GROQ_API_KEY:
            import groq

            self.client = groq.Groq(api_key=cfg.GROQ_API_KEY, timeout=self.timeout_seconds, max_retries=0)

    def write(self, stats: HabitStats) -> List[str]:
        if self.client is None:
            return fallback_insights(stats)
        try:
            lines = self._ask_model(stats)
        except Exception as exc:
            logger.warning(
                "insights.fallback",
                extra={"user_id": stats.user_id, "event_type": "insights.generate", "error": str(exc)[:200]},
            )
            return fallback_insights(stats)
        return lines or fallback_insights(stats)

    def _ask_model(self, stats: HabitStats) -> List[str]:
        payload = stats.model_dump_json(include={
            "active_habits",
            "scheduled_today",
            "completed_today",
            "completion_rate_7d",
            "completion_rate_30d",
            "consistency_score",
            "longest_streak",
            "categories",
        })
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": payload},
            ],
            temperature=0.4,
            max_tokens=200,
            timeout=self.timeout_seconds,
        )
        content = response.choices[0].message.content or ""
        lines = [line.strip(" -*\t") for line in content.splitlines()]
        return [line for line in lines if line][:MAX_INSIGHTS]


def fallback_insights(stats: HabitStats) -> List[str]:
    """Rule-based observations used whenever the model is unavailable."""
    if stats.active_habits == 0:
        return ["Add a habit to start building your first streak."]

    lines = []
    if stats.scheduled_today and stats.completed_today == stats.scheduled_today:
        lines.append("Every habit due today is done. Nice work.")
    elif stats.scheduled_today:
        remaining = stats.scheduled_today - stats.completed_today
        lines.append(f"{remaining} habit{'s' if remaining != 1 else ''} still due today.")

    if stats.completion_rate_7d > stats.completion_rate_30d:
        lines.append(f"This week ({stats.completion_rate_7d:.0f}%) is ahead of your 30-day pace ({stats.completion_rate_30d:.0f}%).")
    elif stats.completion_rate_7d < stats.completion_rate_30d:
        lines.append(f"This week ({stats.completion_rate_7d:.0f}%) is behind your 30-day pace ({stats.completion_rate_30d:.0f}%).")

    if stats.categories:
        weakest = min(stats.categories, key=lambda c: c.completion_rate_30d)
        strongest = max(stats.categories, key=lambda c: c.completion_rate_30d)
        if weakest.category != strongest.category:
            lines.append(f"{strongest.category} is your strongest area; {weakest.category} needs the most attention.")

    if stats.longest_streak >= 7:
        lines.append(f"Your longest streak is {stats.longest_streak} days.")

    return lines[:MAX_INSIGHTS]
