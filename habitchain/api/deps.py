"""Shared router helpers: the action facade and the response envelope."""
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from habitchain.core.errors import OperationResult, _extract_request_id, result_error_response
from habitchain.features.actions import UserActions


def get_actions(request: Request) -> UserActions:
    return request.app.state.actions


def respond(request: Request, result: OperationResult, status_code: int = 200, extra: Optional[dict] = None) -> Any:
    """{"data": ...} on success, the normalized error envelope otherwise."""
    if not result.success:
        return result_error_response(request, result)
    body = {"data": result.data, "request_id": _extract_request_id(request)}
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status_code, content=body)
