from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from habitchain.api.deps import get_actions, respond
from habitchain.core.auth import get_current_user_id, get_timezone
from habitchain.features.actions import UserActions

router = APIRouter(prefix="/v1/stats", tags=["stats"])


@router.get("")
def get_stats(
    request: Request,
    user_id: Annotated[str, Depends(get_current_user_id)],
    tz: Annotated[str, Depends(get_timezone)],
    actions: Annotated[UserActions, Depends(get_actions)],
    refresh: bool = Query(False, description="Ignore a matching cached payload"),
):
    """Derived stats, served from cache while the habit data hash still matches."""
    return respond(request, actions.get_stats(user_id, force_refresh=refresh, tz_name=tz))
