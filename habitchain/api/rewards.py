from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from habitchain.api.deps import get_actions, respond
from habitchain.core.auth import get_current_user_id, get_timezone
from habitchain.features.actions import UserActions

router = APIRouter(prefix="/v1/rewards", tags=["rewards"])

UserId = Annotated[str, Depends(get_current_user_id)]
Timezone = Annotated[str, Depends(get_timezone)]
Actions = Annotated[UserActions, Depends(get_actions)]


@router.get("/rank")
def get_rank(request: Request, user_id: UserId, actions: Actions):
    """XP total and the rank derived from it."""
    return respond(request, actions.get_rank_info(user_id))


@router.get("/history")
def get_history(request: Request, user_id: UserId, actions: Actions, limit: int = Query(20)):
    return respond(request, actions.get_reward_history(user_id, limit=limit))


@router.post("/daily-bonus")
def daily_bonus(request: Request, user_id: UserId, tz: Timezone, actions: Actions):
    return respond(request, actions.check_daily_bonus(user_id, tz_name=tz))
