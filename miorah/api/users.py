from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from miorah.config import get_settings
from miorah.db.models import User
from miorah.db.session import get_db
from miorah.models.schemas import MonthCount, RegisterRequest, UserOut
from miorah.observability.logging import log_user_activity
from miorah.security.rate_limit import registration_rate_limiter
from miorah.services import user_service
from miorah.services.auth_dependencies import require_admin
from miorah.services.email_service import EmailDeliveryError, send_email_verification_email

router = APIRouter(prefix="/api/users", tags=["users"])
logger = structlog.get_logger(__name__)


@router.post("", status_code=201, dependencies=[Depends(registration_rate_limiter)])
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> dict[str, object]:
    try:
        user, token = user_service.register_user(db, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        send_email_verification_email(user.email, user.firstname, f"{get_settings().client_url}/verify-email/{token}")
    except EmailDeliveryError as exc:
        user_service.delete_user(db, user)
        logger.error("registration_email_failed", email=payload.email, error=str(exc))
        raise HTTPException(
            status_code=500, detail="Registration failed. Unable to send verification email. Please try again."
        ) from exc

    log_user_activity(str(user.id), "REGISTERED")
    return {
        "message": "Registration successful! Please check your email to verify your account before logging in.",
        "emailSent": True,
        "email": user.email,
    }


@router.get("", response_model=list[UserOut])
async def list_users(new: bool = False, _: User = Depends(require_admin), db: Session = Depends(get_db)):
    return user_service.list_users(db, newest_only=new)


@router.get("/stats", response_model=list[MonthCount])
async def user_stats(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return user_service.registrations_per_month(db)


@router.get("/find/{id}", response_model=UserOut)
async def find_user(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> User:
    user = user_service.get_user(db, id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/{id}/admin")
async def toggle_admin(id: uuid.UUID, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    user = user_service.toggle_admin(db, id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    log_user_activity(str(admin.id), "ADMIN_TOGGLED", target_user_id=str(id), is_admin=user.is_admin)
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "isAdmin": user.is_admin,
        "message": f"User {user.username} admin status set to {str(user.is_admin).lower()}",
    }
