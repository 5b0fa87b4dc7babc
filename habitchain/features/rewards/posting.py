"""
Outbox drain for deferred reward posting.

Each pending intent is applied in its own unit of work, and the status
check happens inside that same unit, so an intent is applied at most once
even when two drains overlap. Failures are logged as RewardAwardFailure and
retried on the next drain until REWARD_OUTBOX_MAX_ATTEMPTS is reached; the
progress that produced the intent is never rolled back.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from habitchain.core.errors import AppError, RewardAwardFailure
from habitchain.core.logging import log_event
from habitchain.core.store import Store
from habitchain.features.rewards.ledger import RewardLedger
from habitchain.models.reward import OutboxStatus


@dataclass
class DrainReport:
    posted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    retrying: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "posted": len(self.posted),
            "skipped": len(self.skipped),
            "retrying": len(self.retrying),
            "failed": len(self.failed),
        }


class OutboxDrainer:
    def __init__(
        self,
        store: Store,
        ledger: RewardLedger,
        max_attempts: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.max_attempts = max(1, max_attempts)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def drain(self, limit: int = 100, user_id: Optional[str] = None) -> DrainReport:
        report = DrainReport()
        with self.store.unit_of_work() as uow:
            batch = [entry.intent.id for entry in uow.outbox.pending(limit=limit, user_id=user_id)]

        for intent_id in batch:
            try:
                self._post_one(intent_id, report)
            except AppError as exc:
                self._record_failure(intent_id, exc, report)
        if batch:
            log_event("info", "reward.outbox.drained", event_type="reward.outbox", extra=report.as_dict())
        return report

    def _post_one(self, intent_id: str, report: DrainReport) -> None:
        with self.store.unit_of_work() as uow:
            entry = uow.outbox.get(intent_id)
            if entry is None or entry.status != OutboxStatus.PENDING:
                report.skipped.append(intent_id)
                return
            result = self.ledger.apply_intent(uow, entry.intent)
            entry.status = OutboxStatus.POSTED
            entry.attempts += 1
            entry.last_error = None if result.success else result.message
            entry.updated_at = self.clock()
            uow.outbox.update(entry)
        report.posted.append(intent_id)

    def _record_failure(self, intent_id: str, exc: AppError, report: DrainReport) -> None:
        failure = RewardAwardFailure(f"Reward intent {intent_id} failed: {exc.message}")
        with self.store.unit_of_work() as uow:
            entry = uow.outbox.get(intent_id)
            if entry is None:
                return
            entry.attempts += 1
            entry.last_error = exc.message
            entry.updated_at = self.clock()
            if entry.attempts >= self.max_attempts:
                entry.status = OutboxStatus.FAILED
                report.failed.append(intent_id)
            else:
                report.retrying.append(intent_id)
            uow.outbox.update(entry)

        log_event(
            "error",
            "reward.outbox.failed",
            user_id=entry.intent.user_id,
            event_type="reward.outbox",
            error_code=failure.code,
            extra={
                "intent_id": intent_id,
                "attempts": entry.attempts,
                "gave_up": entry.status == OutboxStatus.FAILED,
                "error": failure.message,
            },
        )
