from __future__ import annotations

from typing import Any

import jwt
from starlette.datastructures import Headers

from miorah.config import get_settings
from miorah.services.auth_service import decode_session_token, get_token_blacklist


def client_ip(scope: dict[str, Any]) -> str:
    settings = get_settings()
    if settings.trust_proxy:
        forwarded = Headers(scope=scope).get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else "unknown"


def session_user_id(scope: dict[str, Any]) -> str | None:
    """User id from a valid session token, without touching the database."""

    token = Headers(scope=scope).get(get_settings().auth_header_name)
    if not token or token in get_token_blacklist():
        return None
    try:
        payload = decode_session_token(token)
    except jwt.PyJWTError:
        return None
    user_id = payload.get("sub")
    return str(user_id) if user_id else None


def client_identifier(scope: dict[str, Any]) -> str:
    user_id = session_user_id(scope)
    return f"user:{user_id}" if user_id else f"ip:{client_ip(scope)}"
