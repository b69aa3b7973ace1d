from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from pathlib import Path
from typing import Any, Protocol

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from miorah.config import get_settings
from miorah.observability.metrics import get_metrics

logger = structlog.get_logger(__name__)

_TEMPLATES = Environment(
    loader=FileSystemLoader(str(Path(__file__).resolve().parent.parent / "templates" / "email")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class EmailDeliveryError(RuntimeError):
    pass


class MailClient(Protocol):
    def send(self, from_address: str, recipients: list[str], message: str) -> None: ...

    def verify(self) -> None: ...


class SMTPMailClient:
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            server.starttls()
        if self.user and self.password:
            server.login(self.user, self.password)
        return server

    def send(self, from_address: str, recipients: list[str], message: str) -> None:
        server = self._connect()
        try:
            server.sendmail(from_address, recipients, message)
        finally:
            server.quit()

    def verify(self) -> None:
        server = self._connect()
        try:
            server.noop()
        finally:
            server.quit()


_mail_client: MailClient | None = None


def set_mail_client(client: MailClient | None) -> None:
    """Override the mail client (tests, local runs without SMTP)."""

    global _mail_client
    _mail_client = client


def get_mail_client() -> MailClient:
    global _mail_client
    if _mail_client is None:
        settings = get_settings()
        _mail_client = SMTPMailClient(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
        )
    return _mail_client


def render_email(template: str, **context: Any) -> tuple[str, str]:
    """Render ``<template>.txt`` and ``<template>.html``; returns (text, html)."""

    settings = get_settings()
    context.setdefault("business_email", settings.business_email)
    context.setdefault("client_url", settings.client_url)
    text = _TEMPLATES.get_template(f"{template}.txt").render(**context)
    html = _TEMPLATES.get_template(f"{template}.html").render(**context)
    return text, html


def send_email(to: str, subject: str, template: str, **context: Any) -> None:
    settings = get_settings()
    text, html = render_email(template, **context)

    from_address = settings.smtp_user or settings.business_email
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = formataddr((settings.mail_from_name, from_address))
    msg["To"] = to
    msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))

    try:
        get_mail_client().send(from_address, [to], msg.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        get_metrics().observe_email(ok=False)
        logger.warning("email_send_failed", template=template, to=to, error=str(exc))
        raise EmailDeliveryError(str(exc)) from exc

    get_metrics().observe_email(ok=True)
    logger.info("email_sent", template=template, to=to)


def _absolute_url(url: str) -> str:
    if url.startswith("http://") or url.startswith("https://") or url.startswith("data:"):
        return url
    return f"{get_settings().server_base_url.rstrip('/')}{url}"


def _order_lines(products: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # Legacy clients nested the cart list one level deeper.
    if products and isinstance(products[0], list):
        products = products[0]

    lines = []
    for item in products:
        if not isinstance(item, dict):
            continue
        product = item.get("product") if isinstance(item.get("product"), dict) else {}
        quantity = item.get("quantity") or 1
        unit_price = float(product.get("price") or 0)
        images = product.get("images") or []
        primary = next((img for img in images if img.get("is_primary")), images[0] if images else None)
        lines.append(
            {
                "name": product.get("name") or "Product",
                "quantity": quantity,
                "unit_price": unit_price,
                "item_total": float(item.get("itemTotal") or unit_price * quantity),
                "image_url": _absolute_url(primary["image_url"]) if primary and primary.get("image_url") else None,
            }
        )
    return lines


def send_order_confirmation_email(order: Any, customer: dict[str, str]) -> None:
    order_id = str(order.id)
    created = order.created_at.strftime("%d %b %Y") if order.created_at else ""
    send_email(
        customer["email"],
        f"Order Confirmation #{order_id} - Miorah Collections",
        "order_confirmation",
        customer=customer,
        order_ref=order_id.replace("-", "")[-8:].upper(),
        order_date=created,
        amount=float(order.amount),
        address=order.address or {},
        lines=_order_lines(order.products or []),
    )


def send_password_reset_email(email: str, first_name: str, reset_url: str) -> None:
    send_email(
        email,
        "Reset Your Password - Miorah Collections",
        "password_reset",
        first_name=first_name,
        reset_url=reset_url,
    )


def send_email_verification_email(email: str, first_name: str, verification_url: str) -> None:
    send_email(
        email,
        "Verify Your Email Address - Miorah Collections",
        "email_verification",
        first_name=first_name,
        verification_url=verification_url,
    )


def send_contact_emails(form: dict[str, Any], submitted_at: str) -> None:
    """Business notification first, then the customer confirmation."""

    settings = get_settings()
    send_email(
        settings.business_email,
        f"New Contact Form: {form['subject']} - From {form['name']}",
        "contact_business",
        form=form,
        submitted_at=submitted_at,
    )
    send_email(
        form["email"],
        "Thank You for Contacting Miorah Collections",
        "contact_confirmation",
        name=form["name"],
    )


def verify_mail_connection() -> None:
    try:
        get_mail_client().verify()
    except (smtplib.SMTPException, OSError) as exc:
        raise EmailDeliveryError(str(exc)) from exc
