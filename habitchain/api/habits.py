"""
habitchain/api/habits.py
Habit definitions plus daily completion and undo.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from habitchain.api.deps import get_actions, respond
from habitchain.core.auth import get_current_user_id, get_timezone
from habitchain.features.actions import UserActions
from habitchain.models.habit import HabitCreateRequest, HabitStatus

router = APIRouter(prefix="/v1/habits", tags=["habits"])

UserId = Annotated[str, Depends(get_current_user_id)]
Timezone = Annotated[str, Depends(get_timezone)]
Actions = Annotated[UserActions, Depends(get_actions)]


class HabitStatusUpdate(BaseModel):
    status: HabitStatus


@router.post("")
def create_habit(request: Request, body: HabitCreateRequest, user_id: UserId, actions: Actions):
    return respond(request, actions.create_habit(user_id, body), status_code=201)


@router.get("")
def list_habits(
    request: Request,
    user_id: UserId,
    tz: Timezone,
    actions: Actions,
    status: Optional[HabitStatus] = Query(None),
):
    result = actions.list_habits(user_id, status=status, tz_name=tz)
    extra = {"count": len(result.data)} if result.success else None
    return respond(request, result, extra=extra)


@router.get("/analytics")
def habit_analytics(
    request: Request,
    user_id: UserId,
    tz: Timezone,
    actions: Actions,
    days: int = Query(30),
):
    return respond(request, actions.get_habit_analytics(user_id, days=days, tz_name=tz))


@router.patch("/{habit_id}/status")
def update_habit_status(request: Request, habit_id: str, body: HabitStatusUpdate, user_id: UserId, actions: Actions):
    return respond(request, actions.update_habit_status(user_id, habit_id, body.status))


@router.delete("/{habit_id}")
def delete_habit(request: Request, habit_id: str, user_id: UserId, actions: Actions):
    return respond(request, actions.delete_habit(user_id, habit_id))


@router.post("/{habit_id}/complete")
def complete_habit(request: Request, habit_id: str, user_id: UserId, tz: Timezone, actions: Actions):
    return respond(request, actions.complete_habit(user_id, habit_id, tz_name=tz))


@router.post("/{habit_id}/skip")
def skip_habit(request: Request, habit_id: str, user_id: UserId, tz: Timezone, actions: Actions):
    return respond(request, actions.skip_habit(user_id, habit_id, tz_name=tz))
