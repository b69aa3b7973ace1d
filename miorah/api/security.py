from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from miorah.config import get_settings
from miorah.db.models import User
from miorah.models.schemas import CSRFTokenResponse
from miorah.security.csrf import COOKIE_NAME, TOKEN_EXPIRY_SECONDS, csrf_session_id, get_csrf_store
from miorah.security.rate_limit import get_rate_limit_stats
from miorah.services.auth_dependencies import require_admin

router = APIRouter(prefix="/api", tags=["security"])


@router.get("/csrf-token", response_model=CSRFTokenResponse)
async def csrf_token(request: Request, response: Response) -> CSRFTokenResponse:
    issued = get_csrf_store().get_or_issue(csrf_session_id(request.scope))
    response.set_cookie(
        key=COOKIE_NAME,
        value=issued.token,
        max_age=TOKEN_EXPIRY_SECONDS,
        httponly=True,
        samesite="strict",
        secure=get_settings().is_production,
    )
    return CSRFTokenResponse(csrf_token=issued.token, expires=int(issued.expires_at * 1000))


@router.get("/security/rate-limit-stats")
async def rate_limit_stats(_: User = Depends(require_admin)) -> dict:
    return get_rate_limit_stats()
