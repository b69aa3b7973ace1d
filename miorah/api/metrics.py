from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from miorah.config import get_settings
from miorah.db.models import User
from miorah.observability.metrics import get_metrics
from miorah.services.auth_dependencies import require_admin


router = APIRouter(prefix="/api", tags=["metrics"])


@router.get("/metrics")
async def metrics(user: User = Depends(require_admin)) -> dict:
    _ = user  # admin gate; also binds user_id in auth dependency for logs
    settings = get_settings()
    if not settings.enable_metrics_endpoint:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics().snapshot()
