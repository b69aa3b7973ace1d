from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import extract, func, or_, select, update
from sqlalchemy.orm import Session

from miorah.db.models import Order, User
from miorah.models.schemas import ProfileUpdateRequest, RegisterRequest
from miorah.observability.logging import AUTH
from miorah.services.auth_service import generate_account_token, hash_password, verify_password

logger = structlog.get_logger(__name__)

VERIFICATION_TTL = timedelta(hours=24)
RESET_TTL = timedelta(hours=1)

INVALID_CREDENTIALS = "Invalid email/username or password. Please check your credentials and try again."


class EmailNotVerifiedError(ValueError):
    def __init__(self, user: User) -> None:
        super().__init__(
            "Please verify your email address to complete login. Check your inbox for verification instructions."
        )
        self.user = user


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_user(db: Session, user_id: uuid.UUID) -> User | None:
    return db.get(User, user_id)


def find_by_login(db: Session, identifier: str) -> User | None:
    ident = identifier.strip().lower()
    stmt = select(User).where(or_(func.lower(User.email) == ident, func.lower(User.username) == ident))
    return db.execute(stmt).scalars().first()


def authenticate(db: Session, identifier: str, password: str) -> User:
    user = find_by_login(db, identifier)
    if not user or not verify_password(password, user.password_hash):
        logger.info("login_failed", category=AUTH, identifier=identifier)
        raise ValueError(INVALID_CREDENTIALS)
    if not user.is_email_verified:
        raise EmailNotVerifiedError(user)
    logger.info("login_succeeded", category=AUTH, user_id=str(user.id))
    return user


def register_user(db: Session, payload: RegisterRequest) -> tuple[User, str]:
    """Create an unverified account; returns the user and its verification token."""

    if db.execute(select(User.id).where(User.email == payload.email)).first():
        raise ValueError("User with this email already exists")
    if db.execute(select(User.id).where(func.lower(User.username) == payload.username.lower())).first():
        raise ValueError("Username already taken")

    token = generate_account_token()
    user = User(
        firstname=payload.firstname.strip(),
        lastname=payload.lastname.strip(),
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        is_email_verified=False,
        email_verification_token=token,
        email_verification_expires=_now() + VERIFICATION_TTL,
    )
    db.add(user)
    db.commit()
    logger.info("user_registered", category=AUTH, user_id=str(user.id))
    return user, token


def delete_user(db: Session, user: User) -> None:
    # Orders outlive the account; they stay visible to admins as guest orders.
    db.execute(update(Order).where(Order.user_id == user.id).values(user_id=None))
    db.delete(user)
    db.commit()


def update_profile(db: Session, user: User, payload: ProfileUpdateRequest) -> User:
    changes = payload.model_dump(exclude_unset=True, exclude={"password", "current_password"})

    if payload.password:
        if not payload.current_password or not verify_password(payload.current_password, user.password_hash):
            raise ValueError("Old password isn't correct")
        user.password_hash = hash_password(payload.password)

    if changes.get("email") and changes["email"] != user.email:
        if db.execute(select(User.id).where(User.email == changes["email"], User.id != user.id)).first():
            raise ValueError("Email already exists")
    if changes.get("username") and changes["username"].lower() != user.username.lower():
        taken = db.execute(
            select(User.id).where(func.lower(User.username) == changes["username"].lower(), User.id != user.id)
        ).first()
        if taken:
            raise ValueError("Username already taken")

    for field, value in changes.items():
        if value is not None:
            setattr(user, field, value)
    db.commit()
    return user


def check_availability(db: Session, username: str | None, email: str | None) -> dict[str, object]:
    result: dict[str, object] = {"available": True, "message": ""}
    if username and db.execute(select(User.id).where(func.lower(User.username) == username.lower())).first():
        result.update(available=False, message="Username already taken", field="username")
    elif email and db.execute(select(User.id).where(User.email == email.strip().lower())).first():
        result.update(available=False, message="Email already exists", field="email")
    return result


def start_password_reset(db: Session, email: str) -> tuple[User, str] | None:
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        return None
    token = generate_account_token()
    user.reset_password_token = token
    user.reset_password_expires = _now() + RESET_TTL
    db.commit()
    return user, token


def reset_password(db: Session, token: str, new_password: str) -> User:
    stmt = select(User).where(User.reset_password_token == token, User.reset_password_expires > _now())
    user = db.execute(stmt).scalar_one_or_none()
    if user is None:
        raise ValueError("Invalid or expired reset token")
    user.password_hash = hash_password(new_password)
    user.reset_password_token = None
    user.reset_password_expires = None
    db.commit()
    logger.info("password_reset", category=AUTH, user_id=str(user.id))
    return user


def verify_email(db: Session, token: str) -> User:
    stmt = select(User).where(User.email_verification_token == token, User.email_verification_expires > _now())
    user = db.execute(stmt).scalar_one_or_none()
    if user is None:
        raise ValueError("Invalid or expired verification token")
    if user.is_email_verified:
        raise ValueError("Email is already verified")
    user.is_email_verified = True
    user.email_verification_token = None
    user.email_verification_expires = None
    db.commit()
    return user


def renew_verification_token(db: Session, email: str) -> tuple[User, str]:
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        raise ValueError("No account found with this email address")
    if user.is_email_verified:
        raise ValueError("Email is already verified")
    token = generate_account_token()
    user.email_verification_token = token
    user.email_verification_expires = _now() + VERIFICATION_TTL
    db.commit()
    return user, token


def list_users(db: Session, newest_only: bool = False) -> list[User]:
    stmt = select(User).order_by(User.created_at.desc())
    if newest_only:
        stmt = stmt.limit(5)
    return list(db.execute(stmt).scalars())


def registrations_per_month(db: Session) -> list[dict[str, int]]:
    since = _now() - timedelta(days=365)
    month = extract("month", User.created_at)
    stmt = select(month.label("month"), func.count(User.id)).where(User.created_at >= since).group_by(month)
    return [{"month": int(m), "total": int(total)} for m, total in db.execute(stmt).all()]


def toggle_admin(db: Session, user_id: uuid.UUID) -> User | None:
    user = db.get(User, user_id)
    if user is None:
        return None
    user.is_admin = not user.is_admin
    db.commit()
    logger.info("admin_toggled", category=AUTH, user_id=str(user.id), is_admin=user.is_admin)
    return user
