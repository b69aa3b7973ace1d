from __future__ import annotations

import uuid

import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from miorah.config import get_settings
from miorah.db.models import User
from miorah.db.session import get_db
from miorah.services.auth_service import decode_session_token, get_token_blacklist


def get_session_token(request: Request) -> str:
    token = request.headers.get(get_settings().auth_header_name)
    if not token:
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    if token in get_token_blacklist():
        raise HTTPException(status_code=401, detail="Token has been revoked")
    return token


def get_current_user(
    request: Request,
    token: str = Depends(get_session_token),
    db: Session = Depends(get_db),
) -> User:
    try:
        payload = decode_session_token(token)
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Token is not valid") from exc

    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Token is not valid") from exc

    user = db.execute(select(User).where(User.id == user_uuid)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    request.state.user_id = str(user.id)
    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied. Admin only.")
    return user


def require_self_or_admin(id: uuid.UUID, user: User = Depends(get_current_user)) -> User:
    """Path parameter ``id`` must be the caller's own id unless the caller is an admin."""

    if user.id != id and not user.is_admin:
        raise HTTPException(status_code=403, detail="You are not allowed to do that!")
    return user
