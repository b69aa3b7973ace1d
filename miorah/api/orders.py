from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from miorah.db.models import Order, User
from miorah.db.session import get_db
from miorah.models.schemas import (
    GuestOrderCreate,
    MonthCount,
    OrderCreate,
    OrderOut,
    OrderPage,
    OrderStatusUpdate,
    OrderUpdate,
    Pagination,
)
from miorah.security.rate_limit import order_rate_limiter
from miorah.services import order_service, user_service
from miorah.services.auth_dependencies import get_current_user, require_admin, require_self_or_admin
from miorah.services.catalog_service import total_pages

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("", response_model=list[OrderOut])
async def list_orders(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return order_service.list_orders(db)


@router.post("", response_model=OrderOut, dependencies=[Depends(order_rate_limiter)])
def create_order(payload: OrderCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Order:
    if payload.user != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="You are not allowed to do that!")
    owner = user if payload.user == user.id else user_service.get_user(db, payload.user)
    if owner is None:
        raise HTTPException(status_code=400, detail="User doesn't exist")

    order = order_service.create_order(db, payload, owner)
    order_service.notify_customer(order, owner)
    return order


@router.post("/guest", response_model=OrderOut, dependencies=[Depends(order_rate_limiter)])
def create_guest_order(payload: GuestOrderCreate, db: Session = Depends(get_db)) -> Order:
    order = order_service.create_order(db, payload)
    order_service.notify_customer(order)
    return order


@router.get("/admin", response_model=OrderPage)
async def admin_list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: str | None = None,
    search: str | None = None,
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    min_amount: float | None = Query(default=None, alias="minAmount"),
    max_amount: float | None = Query(default=None, alias="maxAmount"),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OrderPage:
    try:
        orders, total = order_service.admin_list_orders(
            db,
            page=page,
            limit=limit,
            status=status,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
            start_date=start_date,
            end_date=end_date,
            min_amount=min_amount,
            max_amount=max_amount,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    pages = total_pages(total, limit)
    return OrderPage(
        orders=[OrderOut.model_validate(order) for order in orders],
        pagination=Pagination(
            current_page=page,
            total_pages=pages,
            total=total,
            has_next_page=page < pages,
            has_prev_page=page > 1,
            limit=limit,
        ),
    )


@router.get("/admin/stats")
async def order_stats(_: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    stats = order_service.order_stats(db)
    stats["recentOrders"] = [
        OrderOut.model_validate(order).model_dump(mode="json", by_alias=True) for order in stats["recentOrders"]
    ]
    return stats


@router.get("/admin/{id}", response_model=OrderOut)
async def admin_get_order(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> Order:
    order = order_service.get_order(db, id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.put("/admin/{id}/status")
async def update_order_status(
    id: uuid.UUID, payload: OrderStatusUpdate, _: User = Depends(require_admin), db: Session = Depends(get_db)
) -> dict:
    try:
        order = order_service.update_status(db, id, payload.status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return {
        "msg": f"Order status updated to {order.status}",
        "order": OrderOut.model_validate(order).model_dump(mode="json", by_alias=True),
    }


@router.get("/income", response_model=list[MonthCount])
async def income(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return order_service.monthly_income(db)


@router.get("/{id}", response_model=list[OrderOut])
async def user_orders(id: uuid.UUID, _: User = Depends(require_self_or_admin), db: Session = Depends(get_db)):
    return order_service.orders_for_user(db, id)


@router.put("/{id}", response_model=OrderOut)
async def update_order(
    id: uuid.UUID, payload: OrderUpdate, _: User = Depends(require_admin), db: Session = Depends(get_db)
) -> Order:
    order = order_service.update_order(db, id, payload)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.delete("/{id}")
async def delete_order(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    if not order_service.delete_order(db, id):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"msg": "order is successfully deleted"}
