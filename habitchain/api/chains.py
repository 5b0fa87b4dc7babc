from typing import Annotated

from fastapi import APIRouter, Depends, Request

from habitchain.api.deps import get_actions, respond
from habitchain.core.auth import get_current_user_id
from habitchain.features.actions import UserActions
from habitchain.models.chain import ChainCreateRequest

router = APIRouter(prefix="/v1/chains", tags=["chains"])

UserId = Annotated[str, Depends(get_current_user_id)]
Actions = Annotated[UserActions, Depends(get_actions)]


@router.post("")
def create_chain(request: Request, body: ChainCreateRequest, user_id: UserId, actions: Actions):
    return respond(request, actions.create_chain(user_id, body), status_code=201)


@router.get("")
def list_chains(request: Request, user_id: UserId, actions: Actions):
    return respond(request, actions.list_chains(user_id))


@router.delete("/{chain_id}")
def delete_chain(request: Request, chain_id: str, user_id: UserId, actions: Actions):
    return respond(request, actions.delete_chain(user_id, chain_id))


@router.post("/{chain_id}/start")
def start_chain(request: Request, chain_id: str, user_id: UserId, actions: Actions):
    """Start a session. 409 with the active session id if one is already running."""
    return respond(request, actions.start_chain(user_id, chain_id), status_code=201)
