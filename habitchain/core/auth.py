"""
Request identity.

This service never authenticates users itself. It trusts either:
1. A Bearer JWT signed with AUTH_JWT_SECRET (HS256), user id in `sub`
2. The X-User-Id header, when no JWT secret is configured

Anything else is an AuthError (401).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, Request

from habitchain.core.config import settings
from habitchain.core.errors import AuthError, ConfigError, ValidationError
from habitchain.core.logging import user_id_ctx_var
from habitchain.features.schedule.evaluator import resolve_timezone

logger = logging.getLogger("habitchain")

MAX_USER_ID_LENGTH = 100


def verify_jwt(token: str, secret: str) -> str:
    """
    Verify an HS256 JWT and return its `sub` claim.

    Raises:
        AuthError: expired, malformed or unsigned token, or no subject
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Token has no subject")
    return str(user_id)


def _settings_for(request: Request):
    return getattr(request.app.state, "settings", None) or settings


def _bind_user(request: Request, user_id: str) -> str:
    # Read by request logging and log_event for the rest of this request
    request.state.user_id = user_id
    user_id_ctx_var.set(user_id)
    return user_id


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="User id supplied by a trusted gateway"),
) -> str:
    cfg = _settings_for(request)
    secret = cfg.AUTH_JWT_SECRET

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        if not secret:
            raise AuthError("Bearer tokens are not accepted: no signing secret configured")
        return _bind_user(request, verify_jwt(auth_header[7:], secret))

    if secret:
        raise AuthError("Missing bearer token")

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthError("Missing authentication (Authorization or X-User-Id)")
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise AuthError("Invalid user id")
    return _bind_user(request, user_id)


async def get_timezone(
    request: Request,
    x_timezone: Optional[str] = Header(None, description="IANA timezone for day bucketing"),
) -> str:
    name = x_timezone or _settings_for(request).DEFAULT_TIMEZONE
    try:
        resolve_timezone(name)
    except ConfigError as exc:
        raise ValidationError(f"Unknown timezone {name!r}") from exc
    return name
