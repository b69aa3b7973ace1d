from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from miorah.db.models import Category, User
from miorah.db.session import get_db
from miorah.models.schemas import CategoryCreate, CategoryOut, CategoryUpdate
from miorah.services import catalog_service
from miorah.services.auth_dependencies import require_admin

router = APIRouter(prefix="/api/categories", tags=["categories"])


@router.get("", response_model=list[CategoryOut])
async def list_categories(db: Session = Depends(get_db)):
    return catalog_service.list_categories(db)


@router.get("/{id}", response_model=CategoryOut)
async def get_category(id: uuid.UUID, db: Session = Depends(get_db)) -> Category:
    category = catalog_service.get_category(db, id)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.post("", response_model=CategoryOut, status_code=201)
async def create_category(
    payload: CategoryCreate, _: User = Depends(require_admin), db: Session = Depends(get_db)
) -> Category:
    return catalog_service.create_category(db, payload)


@router.put("/{id}", response_model=CategoryOut)
async def update_category(
    id: uuid.UUID, payload: CategoryUpdate, _: User = Depends(require_admin), db: Session = Depends(get_db)
) -> Category:
    category = catalog_service.update_category(db, id, payload)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.delete("/{id}")
async def delete_category(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    try:
        deleted = catalog_service.delete_category(db, id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"msg": "Category successfully deleted"}
