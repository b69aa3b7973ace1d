from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import extract, func, or_, select
from sqlalchemy.orm import Session, selectinload

from miorah.db.models import Order, User
from miorah.models.schemas import ORDER_STATUSES, GuestOrderCreate, OrderUpdate
from miorah.services.email_service import EmailDeliveryError, send_order_confirmation_email

logger = structlog.get_logger(__name__)

_SORTABLE = {
    "createdAt": Order.created_at,
    "updatedAt": Order.updated_at,
    "amount": Order.amount,
    "status": Order.status,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _with_user(stmt):
    return stmt.options(selectinload(Order.user))


def _customer_name(address: dict[str, Any], user: User | None) -> str:
    first = address.get("firstname") or (user.firstname if user else "")
    last = address.get("lastname") or (user.lastname if user else "")
    return f"{first} {last}".strip()


def create_order(db: Session, payload: GuestOrderCreate, user: User | None = None) -> Order:
    """Persist an order; ``user`` is None for guest checkouts."""

    address = payload.address.model_dump(exclude_none=True)
    order = Order(
        user_id=user.id if user else None,
        products=payload.products,
        amount=payload.amount,
        address=address,
        customer_name=_customer_name(address, user),
        customer_email=str(address.get("email") or (user.email if user else "")).lower(),
        payment_id=payload.payment_id,
    )
    db.add(order)
    db.commit()
    logger.info("order_created", order_id=str(order.id), guest=user is None, amount=order.amount)
    return get_order(db, order.id)  # type: ignore[return-value]


def notify_customer(order: Order, user: User | None = None) -> bool:
    """Send the confirmation email; delivery failures never fail the order."""

    if user is not None:
        customer = {"firstname": user.firstname, "lastname": user.lastname, "email": user.email}
    else:
        address = order.address or {}
        if not address.get("email"):
            return False
        customer = {
            "firstname": address.get("firstname") or "Guest",
            "lastname": address.get("lastname") or "Customer",
            "email": address["email"],
        }
    try:
        send_order_confirmation_email(order, customer)
    except EmailDeliveryError as exc:
        logger.warning("order_confirmation_failed", order_id=str(order.id), error=str(exc))
        return False
    return True


def get_order(db: Session, order_id: uuid.UUID) -> Order | None:
    return db.execute(_with_user(select(Order).where(Order.id == order_id))).scalar_one_or_none()


def list_orders(db: Session) -> list[Order]:
    return list(db.execute(_with_user(select(Order).order_by(Order.created_at.desc()))).scalars())


def orders_for_user(db: Session, user_id: uuid.UUID) -> list[Order]:
    stmt = _with_user(select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc()))
    return list(db.execute(stmt).scalars())


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def admin_list_orders(
    db: Session,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    search: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    start_date: str | None = None,
    end_date: str | None = None,
    min_amount: float | None = None,
    max_amount: float | None = None,
) -> tuple[list[Order], int]:
    conditions: list[Any] = []
    if status and status != "all":
        conditions.append(Order.status == status)
    if start_date:
        conditions.append(Order.created_at >= _parse_date(start_date))
    if end_date:
        conditions.append(Order.created_at <= _parse_date(end_date))
    if min_amount is not None:
        conditions.append(Order.amount >= min_amount)
    if max_amount is not None:
        conditions.append(Order.amount <= max_amount)
    if search:
        pattern = f"%{search}%"
        conditions.append(
            or_(
                Order.customer_name.ilike(pattern),
                Order.customer_email.ilike(pattern),
                Order.payment_id.ilike(pattern),
            )
        )

    column = _SORTABLE.get(sort_by, Order.created_at)
    order = column.asc() if sort_order == "asc" else column.desc()
    stmt = _with_user(select(Order).where(*conditions).order_by(order).offset((page - 1) * limit).limit(limit))
    total = int(db.execute(select(func.count(Order.id)).where(*conditions)).scalar_one())
    return list(db.execute(stmt).scalars()), total


def update_status(db: Session, order_id: uuid.UUID, status: str) -> Order | None:
    if status not in ORDER_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    order = db.get(Order, order_id)
    if order is None:
        return None
    order.status = status
    db.commit()
    logger.info("order_status_updated", order_id=str(order_id), status=status)
    return get_order(db, order_id)


def update_order(db: Session, order_id: uuid.UUID, payload: OrderUpdate) -> Order | None:
    order = db.get(Order, order_id)
    if order is None:
        return None
    changes = payload.model_dump(exclude_unset=True)
    if "address" in changes:
        address = payload.address.model_dump(exclude_none=True) if payload.address else {}
        changes["address"] = address
        changes["customer_name"] = _customer_name(address, order.user)
        changes["customer_email"] = str(address.get("email") or (order.user.email if order.user else "")).lower()
    for field, value in changes.items():
        setattr(order, field, value)
    db.commit()
    return get_order(db, order_id)


def delete_order(db: Session, order_id: uuid.UUID) -> bool:
    order = db.get(Order, order_id)
    if order is None:
        return False
    db.delete(order)
    db.commit()
    return True


def order_stats(db: Session) -> dict[str, Any]:
    now = _now()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)

    by_status = db.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)).all()
    today = db.execute(select(func.count(Order.id)).where(Order.created_at >= start_of_day)).scalar_one()
    revenue = db.execute(
        select(func.coalesce(func.sum(Order.amount), 0)).where(Order.created_at >= start_of_month)
    ).scalar_one()
    recent = db.execute(_with_user(select(Order).order_by(Order.created_at.desc()).limit(5))).scalars()

    return {
        "totalOrders": int(db.execute(select(func.count(Order.id))).scalar_one()),
        "ordersByStatus": [{"status": status, "count": int(count)} for status, count in by_status],
        "todaysOrders": int(today),
        "monthlyRevenue": float(revenue),
        "recentOrders": list(recent),
    }


def monthly_income(db: Session) -> list[dict[str, float]]:
    since = _now() - timedelta(days=62)
    month = extract("month", Order.created_at)
    stmt = select(month.label("month"), func.sum(Order.amount)).where(Order.created_at >= since).group_by(month)
    return [{"month": int(m), "total": float(total or 0)} for m, total in db.execute(stmt).all()]
