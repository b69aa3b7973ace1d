from __future__ import annotations

import uuid

import jwt
import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from miorah.config import get_settings
from miorah.db.models import User
from miorah.db.session import get_db
from miorah.models.schemas import (
    AvailabilityRequest,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    ProfileUpdateRequest,
    ResetPasswordRequest,
    UserOut,
    VerifyEmailRequest,
)
from miorah.observability.logging import log_user_activity
from miorah.security.rate_limit import auth_rate_limiter
from miorah.services import user_service
from miorah.services.auth_dependencies import get_current_user, get_session_token, require_self_or_admin
from miorah.services.auth_service import create_session_token, decode_session_token, get_token_blacklist
from miorah.services.email_service import (
    EmailDeliveryError,
    send_email_verification_email,
    send_password_reset_email,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = structlog.get_logger(__name__)

_RESET_SENT = "If an account with that email exists, you will receive password reset instructions."


def _session_for(user: User) -> str:
    return create_session_token(user_id=str(user.id), is_admin=user.is_admin)


@router.get("", response_model=UserOut)
async def me(user: User = Depends(get_current_user)) -> User:
    return user


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(auth_rate_limiter)])
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    try:
        user = user_service.authenticate(db, payload.email, payload.password)
    except user_service.EmailNotVerifiedError as exc:
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "emailVerified": False,
                "email": exc.user.email,
                "username": exc.user.username,
                "requiresVerification": True,
            },
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_user_activity(str(user.id), "LOGIN")
    return LoginResponse(token=_session_for(user), user=UserOut.model_validate(user))


@router.post("/refresh")
async def refresh(user: User = Depends(get_current_user)) -> dict[str, str]:
    return {
        "token": _session_for(user),
        "message": "Token refreshed successfully",
        "expiresIn": f"{get_settings().jwt_exp_minutes // 60}h",
    }


@router.post("/logout")
async def logout(
    token: str = Depends(get_session_token),
    user: User = Depends(get_current_user),
) -> dict[str, object]:
    try:
        expires_at = float(decode_session_token(token)["exp"])
    except (jwt.PyJWTError, KeyError) as exc:
        raise HTTPException(status_code=401, detail="Token is not valid") from exc
    get_token_blacklist().add(token, expires_at)
    log_user_activity(str(user.id), "LOGOUT")
    return {"message": "Logged out successfully", "success": True}


@router.post("/check-availability")
async def check_availability(payload: AvailabilityRequest, db: Session = Depends(get_db)) -> dict[str, object]:
    return user_service.check_availability(db, payload.username, payload.email)


@router.post("/forgot-password")
def forgot_password(payload: EmailRequest, db: Session = Depends(get_db)) -> dict[str, str]:
    started = user_service.start_password_reset(db, payload.email)
    if started is not None:
        user, token = started
        try:
            send_password_reset_email(
                user.email, user.firstname, f"{get_settings().client_url}/reset-password/{token}"
            )
        except EmailDeliveryError as exc:
            logger.warning("password_reset_email_failed", user_id=str(user.id), error=str(exc))
    return {"message": _RESET_SENT}


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Session = Depends(get_db)) -> dict[str, str]:
    try:
        user_service.reset_password(db, payload.token, payload.password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Password has been reset successfully"}


@router.post("/verify-email")
async def verify_email(payload: VerifyEmailRequest, db: Session = Depends(get_db)) -> dict[str, object]:
    try:
        user = user_service.verify_email(db, payload.token)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "message": "Email verified successfully! You can now log in to your account.",
        "emailVerified": True,
        "user": UserOut.model_validate(user).model_dump(mode="json", by_alias=True),
    }


@router.post("/resend-verification")
def resend_verification(payload: EmailRequest, db: Session = Depends(get_db)) -> dict[str, object]:
    try:
        user, token = user_service.renew_verification_token(db, payload.email)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        send_email_verification_email(user.email, user.firstname, f"{get_settings().client_url}/verify-email/{token}")
    except EmailDeliveryError as exc:
        raise HTTPException(status_code=500, detail="Failed to send verification email. Please try again.") from exc
    return {"message": "Verification email has been sent. Please check your email.", "emailSent": True}


@router.put("/{id}", response_model=UserOut)
def update_profile(
    id: uuid.UUID,
    payload: ProfileUpdateRequest,
    caller: User = Depends(require_self_or_admin),
    db: Session = Depends(get_db),
) -> User:
    user = user_service.get_user(db, id)
    if user is None:
        raise HTTPException(status_code=404, detail="User doesn't exist")
    try:
        updated = user_service.update_profile(db, user, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_user_activity(str(caller.id), "PROFILE_UPDATED", target_user_id=str(id))
    return updated


@router.delete("/{id}")
async def delete_account(
    id: uuid.UUID,
    caller: User = Depends(require_self_or_admin),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    user = user_service.get_user(db, id)
    if user is None:
        raise HTTPException(status_code=404, detail="User doesn't exist")
    user_service.delete_user(db, user)
    log_user_activity(str(caller.id), "ACCOUNT_DELETED", target_user_id=str(id))
    return {"msg": "User is successfully deleted"}
