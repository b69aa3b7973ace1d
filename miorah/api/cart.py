from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from miorah.db.models import Cart, User
from miorah.db.session import get_db
from miorah.models.schemas import CartOut, CartRequest
from miorah.services import cart_service
from miorah.services.auth_dependencies import get_current_user, require_admin, require_self_or_admin

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("", response_model=list[CartOut])
async def list_carts(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return cart_service.list_carts(db)


@router.post("", response_model=CartOut)
async def create_cart(
    payload: CartRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> Cart:
    owner = payload.user_id or user.id
    if owner != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="You are not allowed to do that!")
    try:
        return cart_service.create_cart(db, owner, payload.products)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{id}", response_model=CartOut | None)
async def get_cart(id: uuid.UUID, _: User = Depends(require_self_or_admin), db: Session = Depends(get_db)) -> Cart | None:
    return cart_service.get_cart(db, id)


@router.put("/{id}", response_model=CartOut)
async def save_cart(
    id: uuid.UUID, payload: CartRequest, _: User = Depends(require_self_or_admin), db: Session = Depends(get_db)
) -> Cart:
    return cart_service.save_cart(db, id, payload.products)


@router.delete("/{id}")
async def delete_cart(id: uuid.UUID, _: User = Depends(require_self_or_admin), db: Session = Depends(get_db)) -> dict:
    if not cart_service.delete_cart(db, id):
        raise HTTPException(status_code=404, detail="Cart not found")
    return {"msg": "Cart is successfully deleted"}
