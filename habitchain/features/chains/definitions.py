from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from habitchain.core.errors import NotFoundError, ValidationError
from habitchain.core.logging import log_event
from habitchain.core.store import UnitOfWork
from habitchain.models.chain import ChainCreateRequest, ChainDefinition, ChainStep


class ChainService:
    """Chain definitions. Steps must reference habits the caller owns."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def create(self, uow: UnitOfWork, user_id: str, request: ChainCreateRequest) -> ChainDefinition:
        if not request.steps:
            raise ValidationError("A chain needs at least one habit")
        steps = []
        for step in request.steps:
            habit = uow.habits.get(user_id, step.habit_id)
            if habit is None:
                raise ValidationError(f"Habit {step.habit_id} not found")
            steps.append(ChainStep(habit_id=habit.id, habit_name=habit.name, expected_minutes=step.expected_minutes))

        chain = ChainDefinition(
            id=uuid4().hex,
            user_id=user_id,
            name=request.name.strip(),
            description=request.description,
            time_of_day=request.time_of_day,
            steps=steps,
            created_at=self.clock(),
        )
        uow.chains.insert(chain)
        log_event(
            "info",
            "chain.created",
            user_id=user_id,
            event_type="chain.created",
            extra={"chain_id": chain.id, "steps": len(steps)},
        )
        return chain

    def list(self, uow: UnitOfWork, user_id: str) -> List[ChainDefinition]:
        return uow.chains.list(user_id)

    def delete(self, uow: UnitOfWork, user_id: str, chain_id: str) -> None:
        if not uow.chains.delete(user_id, chain_id):
            raise NotFoundError("Chain not found")
        log_event("info", "chain.deleted", user_id=user_id, event_type="chain.deleted", extra={"chain_id": chain_id})
