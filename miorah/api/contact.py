from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from miorah.db.models import User
from miorah.models.schemas import ContactRequest, format_validation_errors
from miorah.observability.logging import log_user_activity
from miorah.security.clients import client_ip
from miorah.services.auth_dependencies import require_admin
from miorah.services.email_service import EmailDeliveryError, send_contact_emails, verify_mail_connection

router = APIRouter(prefix="/api/contact", tags=["contact"])

CONTACT_PHONE = "+92 344 8066483"


@router.post("")
def submit_contact_form(request: Request, body: Any = Body(default=None)) -> JSONResponse:
    try:
        form = ContactRequest.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as exc:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Please check your input and try again.",
                "errors": format_validation_errors(exc.errors()),
            },
        )

    submitted_at = datetime.now(timezone.utc).strftime("%d %b %Y, %H:%M UTC")
    ip = client_ip(request.scope)
    try:
        send_contact_emails(form.model_dump(by_alias=True), submitted_at)
    except EmailDeliveryError as exc:
        log_user_activity(None, "CONTACT_FORM_ERROR", error=str(exc), name=form.name, email=form.email, ip=ip)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Sorry, there was an error sending your message. "
                f"Please try again or contact us directly at {CONTACT_PHONE}.",
            },
        )

    log_user_activity(
        None,
        "CONTACT_FORM_SUBMITTED",
        name=form.name,
        email=form.email,
        subject=form.subject,
        has_phone=bool(form.phone),
        marketing_consent=form.marketing_consent,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
    )
    return JSONResponse(
        status_code=200,
        content={"success": True, "message": "Thank you for your message! We'll get back to you within 24 hours."},
    )


@router.get("/test")
def test_mail_connection(_: User = Depends(require_admin)) -> JSONResponse:
    try:
        verify_mail_connection()
    except EmailDeliveryError as exc:
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Email configuration error", "error": str(exc)},
        )
    return JSONResponse(status_code=200, content={"success": True, "message": "Email configuration is working!"})
