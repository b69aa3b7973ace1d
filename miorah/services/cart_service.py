from __future__ import annotations

import math
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from miorah.db.models import Cart

MAX_ITEM_QUANTITY = 100


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def sanitize_cart_items(items: list[Any]) -> list[dict[str, Any]]:
    """Drop malformed cart items and clamp the numeric fields of the rest."""

    clean: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id") or not item.get("product"):
            continue
        quantity, total = item.get("quantity"), item.get("itemTotal")
        if not _is_number(quantity) or quantity <= 0:
            continue
        if not _is_number(total) or total < 0:
            continue
        clean.append(
            {
                **item,
                "quantity": min(MAX_ITEM_QUANTITY, max(1, math.floor(quantity))),
                "itemTotal": round(float(total), 2),
            }
        )
    return clean


def get_cart(db: Session, user_id: uuid.UUID) -> Cart | None:
    return db.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()


def list_carts(db: Session) -> list[Cart]:
    return list(db.execute(select(Cart).order_by(Cart.created_at.desc())).scalars())


def create_cart(db: Session, user_id: uuid.UUID, items: list[Any]) -> Cart:
    if get_cart(db, user_id) is not None:
        raise ValueError("Cart already exists for this user")
    cart = Cart(user_id=user_id, products=sanitize_cart_items(items))
    db.add(cart)
    db.commit()
    return cart


def save_cart(db: Session, user_id: uuid.UUID, items: list[Any]) -> Cart:
    cart = get_cart(db, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        db.add(cart)
    cart.products = sanitize_cart_items(items)
    db.commit()
    return cart


def delete_cart(db: Session, user_id: uuid.UUID) -> bool:
    cart = get_cart(db, user_id)
    if cart is None:
        return False
    db.delete(cart)
    db.commit()
    return True
