from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from miorah.db.models import Category, User
from miorah.services.auth_service import create_session_token, hash_password
from miorah.services.user_service import find_by_login

DEFAULT_CATEGORIES = [
    ("Necklace", "Artificial Gold color Necklaces"),
    ("Rings", "Artificial Gold color Rings"),
    ("Earrings", "Artificial Gold color Earrings"),
    ("Pendants", "Artificial Gold color Pendants"),
    ("Handcuffs", "Artificial Gold color Handcuffs"),
    ("Bridal Sets", "Artificial Gold color Bridal Sets"),
]


def create_admin(
    db: Session, email: str, username: str, password: str, firstname: str = "Admin", lastname: str = "User"
) -> tuple[User, bool]:
    """Create a verified admin, or promote the existing account; returns (user, created)."""

    user = find_by_login(db, email) or find_by_login(db, username)
    if user is not None:
        user.is_admin = True
        db.commit()
        return user, False

    user = User(
        firstname=firstname,
        lastname=lastname,
        username=username,
        email=email.strip().lower(),
        password_hash=hash_password(password),
        is_admin=True,
        is_email_verified=True,
    )
    db.add(user)
    db.commit()
    return user, True


def make_admin(db: Session, identifier: str) -> User | None:
    user = find_by_login(db, identifier)
    if user is None:
        return None
    user.is_admin = True
    db.commit()
    return user


def add_default_categories(db: Session) -> list[str]:
    existing = {name.lower() for name in db.execute(select(func.lower(Category.name))).scalars()}
    added = []
    for name, description in DEFAULT_CATEGORIES:
        if name.lower() in existing:
            continue
        db.add(Category(name=name, description=description))
        added.append(name)
    db.commit()
    return added


def admin_token(db: Session, identifier: str) -> str:
    user = find_by_login(db, identifier)
    if user is None:
        raise ValueError(f"No user found for {identifier}")
    if not user.is_admin:
        raise ValueError(f"{user.username} is not an admin")
    return create_session_token(user_id=str(user.id), is_admin=True)
