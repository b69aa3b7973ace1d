from __future__ import annotations

import secrets
import time
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

import bcrypt
import jwt

from miorah.config import get_settings


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_session_token(user_id: str, is_admin: bool) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": user_id,
        "is_admin": is_admin,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.jwt_exp_minutes)).timestamp()),
        # Two tokens minted in the same second for the same user must still differ.
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_session_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])


def generate_account_token() -> str:
    """Random token for email verification and password reset links."""
    return secrets.token_hex(32)


class TokenBlacklist:
    """Logged-out session tokens, remembered until they would have expired anyway."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens: dict[str, float] = {}

    def add(self, token: str, expires_at: float) -> None:
        with self._lock:
            self._tokens[token] = expires_at

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._tokens

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [token for token, expires_at in self._tokens.items() if expires_at <= now]
            for token in expired:
                del self._tokens[token]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._tokens.clear()


_BLACKLIST = TokenBlacklist()


def get_token_blacklist() -> TokenBlacklist:
    return _BLACKLIST
