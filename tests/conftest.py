from __future__ import annotations

import smtplib
from collections.abc import AsyncIterator, Awaitable, Callable
from email import message_from_string
from email.header import decode_header, make_header

import pytest
from httpx import ASGITransport, AsyncClient

from miorah.config import get_settings
from miorah.db.models import Base, User
from miorah.db.session import get_engine, get_sessionmaker
from miorah.main import app
from miorah.observability.metrics import reset_metrics
from miorah.security.csrf import get_csrf_store
from miorah.security.headers import get_brute_force_guard
from miorah.security.rate_limit import get_rate_limit_store
from miorah.services.auth_service import create_session_token, get_token_blacklist, hash_password
from miorah.services.email_service import set_mail_client

PASSWORD = "secret123"


class FakeMailClient:
    """Collects outgoing mail instead of talking to an SMTP server."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = False

    def send(self, from_address: str, recipients: list[str], message: str) -> None:
        if self.fail:
            raise smtplib.SMTPException("smtp unavailable")
        parsed = message_from_string(message)
        bodies = [part.get_payload(decode=True).decode("utf-8") for part in parsed.walk() if not part.is_multipart()]
        self.sent.append(
            {
                "from": from_address,
                "to": recipients[0],
                "subject": str(make_header(decode_header(parsed["Subject"]))),
                "text": bodies[0] if bodies else "",
                "html": bodies[-1] if bodies else "",
            }
        )

    def verify(self) -> None:
        if self.fail:
            raise smtplib.SMTPException("smtp unavailable")


def _reset_security_state() -> None:
    get_rate_limit_store().reset()
    get_csrf_store().reset()
    get_brute_force_guard().reset()
    get_token_blacklist().reset()
    reset_metrics()


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'miorah.db'}")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("CLIENT_URL", "http://shop.test")
    monkeypatch.setenv("BUSINESS_EMAIL", "owner@miorah.test")
    monkeypatch.setenv("EMAIL_USER", "mailer@miorah.test")
    get_settings.cache_clear()

    Base.metadata.create_all(get_engine())
    get_settings().product_upload_path.mkdir(parents=True, exist_ok=True)
    _reset_security_state()

    yield

    _reset_security_state()
    set_mail_client(None)
    get_settings.cache_clear()


@pytest.fixture
def mail() -> FakeMailClient:
    client = FakeMailClient()
    set_mail_client(client)
    return client


@pytest.fixture
def db():
    session = get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user() -> Callable[..., dict[str, str]]:
    """Insert a verified account directly and return its id, login and session token."""

    counter = {"n": 0}

    def _make(admin: bool = False, verified: bool = True, **fields: str) -> dict[str, str]:
        counter["n"] += 1
        n = counter["n"]
        username = fields.pop("username", f"{'admin' if admin else 'shopper'}{n}")
        email = fields.pop("email", f"{username}@example.com")
        with get_sessionmaker()() as session:
            user = User(
                firstname=fields.pop("firstname", "Ayesha"),
                lastname=fields.pop("lastname", "Khan"),
                username=username,
                email=email,
                password_hash=hash_password(PASSWORD),
                is_admin=admin,
                is_email_verified=verified,
                **fields,
            )
            session.add(user)
            session.commit()
            user_id = str(user.id)
        return {
            "id": user_id,
            "username": username,
            "email": email,
            "password": PASSWORD,
            "token": create_session_token(user_id=user_id, is_admin=admin),
        }

    return _make


@pytest.fixture
async def api_client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def csrf_headers(api_client: AsyncClient) -> Callable[[str | None], Awaitable[dict[str, str]]]:
    """Session headers plus a CSRF token issued for that session."""

    async def _headers(token: str | None = None) -> dict[str, str]:
        headers = {"x-auth-token": token} if token else {}
        resp = await api_client.get("/api/csrf-token", headers=headers)
        assert resp.status_code == 200
        return {**headers, "x-csrf-token": resp.json()["csrfToken"]}

    return _headers
