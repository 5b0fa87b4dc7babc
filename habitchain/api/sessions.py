"""
habitchain/api/sessions.py
Chain session lifecycle: step through, pause/resume, breaks, abandon.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from habitchain.api.deps import get_actions, respond
from habitchain.core.auth import get_current_user_id, get_timezone
from habitchain.features.actions import UserActions
from habitchain.features.chains.service import PAST_SESSIONS_DEFAULT_LIMIT
from habitchain.models.habit import NOTES_MAX_LENGTH

router = APIRouter(prefix="/v1/sessions", tags=["sessions"])

UserId = Annotated[str, Depends(get_current_user_id)]
Timezone = Annotated[str, Depends(get_timezone)]
Actions = Annotated[UserActions, Depends(get_actions)]


class StepNotes(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX_LENGTH)


class StepSkip(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=NOTES_MAX_LENGTH)


class BreakRequest(BaseModel):
    minutes: Optional[int] = None


@router.get("/active")
def get_active_session(request: Request, user_id: UserId, actions: Actions):
    return respond(request, actions.get_active_chain_session(user_id))


@router.get("/history")
def past_sessions(
    request: Request,
    user_id: UserId,
    actions: Actions,
    limit: int = Query(PAST_SESSIONS_DEFAULT_LIMIT),
):
    return respond(request, actions.get_past_chain_sessions(user_id, limit=limit))


@router.post("/{session_id}/complete")
def complete_current(
    request: Request,
    session_id: str,
    user_id: UserId,
    tz: Timezone,
    actions: Actions,
    body: Optional[StepNotes] = None,
):
    notes = body.notes if body else None
    return respond(request, actions.complete_current_habit(user_id, session_id, notes=notes, tz_name=tz))


@router.post("/{session_id}/skip")
def skip_current(request: Request, session_id: str, user_id: UserId, actions: Actions, body: Optional[StepSkip] = None):
    reason = body.reason if body else None
    return respond(request, actions.skip_current_habit(user_id, session_id, reason=reason))


@router.post("/{session_id}/pause")
def pause(request: Request, session_id: str, user_id: UserId, actions: Actions):
    return respond(request, actions.pause_chain_session(user_id, session_id))


@router.post("/{session_id}/resume")
def resume(request: Request, session_id: str, user_id: UserId, actions: Actions):
    return respond(request, actions.resume_chain_session(user_id, session_id))


@router.post("/{session_id}/break")
def start_break(request: Request, session_id: str, user_id: UserId, actions: Actions, body: Optional[BreakRequest] = None):
    minutes = body.minutes if body else None
    return respond(request, actions.start_break(user_id, session_id, minutes))


@router.post("/{session_id}/break/end")
def end_break(request: Request, session_id: str, user_id: UserId, actions: Actions):
    return respond(request, actions.end_break(user_id, session_id))


@router.post("/{session_id}/abandon")
def abandon(request: Request, session_id: str, user_id: UserId, actions: Actions):
    return respond(request, actions.abandon_chain_session(user_id, session_id))
