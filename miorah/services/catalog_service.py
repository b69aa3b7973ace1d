from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from miorah.config import get_settings
from miorah.db.models import Category, Product, ProductImage
from miorah.models.schemas import CategoryCreate, CategoryUpdate, ImageRef, ProductCreate, ProductUpdate

logger = structlog.get_logger(__name__)

LOW_STOCK_THRESHOLD = 10
ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}
_SORTABLE = {
    "createdAt": Product.created_at,
    "updatedAt": Product.updated_at,
    "name": Product.name,
    "price": Product.price,
    "stock_quantity": Product.stock_quantity,
}


def _with_relations(stmt):
    return stmt.options(selectinload(Product.images), selectinload(Product.category))


# --- categories -----------------------------------------------------------


def list_categories(db: Session) -> list[Category]:
    return list(db.execute(select(Category).order_by(Category.created_at)).scalars())


def get_category(db: Session, category_id: uuid.UUID) -> Category | None:
    return db.get(Category, category_id)


def create_category(db: Session, payload: CategoryCreate) -> Category:
    category = Category(name=payload.name.strip(), description=payload.description)
    db.add(category)
    db.commit()
    return category


def update_category(db: Session, category_id: uuid.UUID, payload: CategoryUpdate) -> Category | None:
    category = db.get(Category, category_id)
    if category is None:
        return None
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(category, field, value)
    db.commit()
    return category


def delete_category(db: Session, category_id: uuid.UUID) -> bool:
    category = db.get(Category, category_id)
    if category is None:
        return False
    if db.execute(select(Product.id).where(Product.category_id == category_id).limit(1)).first():
        raise ValueError("Category still has products; move or delete them first")
    db.delete(category)
    db.commit()
    return True


# --- products -------------------------------------------------------------


def list_products(
    db: Session, newest: bool = False, category_id: uuid.UUID | None = None, featured: bool = False
) -> list[Product]:
    stmt = _with_relations(select(Product).where(Product.is_active.is_(True)))
    if newest:
        stmt = stmt.order_by(Product.created_at.desc()).limit(5)
    elif category_id is not None:
        stmt = stmt.where(Product.category_id == category_id)
    elif featured:
        stmt = stmt.where(Product.is_featured.is_(True))
    if not newest:
        stmt = stmt.order_by(Product.created_at)
    return list(db.execute(stmt).scalars())


def get_product(db: Session, product_id: uuid.UUID) -> Product | None:
    return db.execute(_with_relations(select(Product).where(Product.id == product_id))).scalar_one_or_none()


def _require_category(db: Session, category_id: uuid.UUID) -> None:
    if db.get(Category, category_id) is None:
        raise ValueError("Category not found")


def _replace_images(product: Product, images: list[ImageRef]) -> None:
    product.images.clear()
    for index, image in enumerate(images):
        product.images.append(ProductImage(image_url=image.image_url, is_primary=index == 0))


def create_product(db: Session, payload: ProductCreate) -> Product:
    _require_category(db, payload.category_id)
    product = Product(**payload.model_dump(exclude={"images"}))
    if payload.images:
        _replace_images(product, payload.images)
    db.add(product)
    db.commit()
    return get_product(db, product.id)  # type: ignore[return-value]


def update_product(db: Session, product_id: uuid.UUID, payload: ProductUpdate) -> Product | None:
    product = get_product(db, product_id)
    if product is None:
        return None
    changes = payload.model_dump(exclude_unset=True, exclude={"images"})
    if changes.get("category_id"):
        _require_category(db, changes["category_id"])
    for field, value in changes.items():
        setattr(product, field, value)
    if payload.images is not None:
        _replace_images(product, payload.images)
    db.commit()
    db.expire(product)
    return get_product(db, product_id)


def deactivate_product(db: Session, product_id: uuid.UUID) -> bool:
    product = db.get(Product, product_id)
    if product is None:
        return False
    product.is_active = False
    db.commit()
    return True


def low_stock_products(db: Session, threshold: int = LOW_STOCK_THRESHOLD) -> list[Product]:
    stmt = _with_relations(
        select(Product)
        .where(Product.is_active.is_(True), Product.stock_quantity <= threshold)
        .order_by(Product.stock_quantity)
    )
    return list(db.execute(stmt).scalars())


def inventory_stats(db: Session) -> dict[str, Any]:
    active = Product.is_active.is_(True)
    value = func.coalesce(func.sum(Product.price * Product.stock_quantity), 0)

    by_category = db.execute(
        select(Category.name, func.count(Product.id), value)
        .join(Category, Product.category_id == Category.id)
        .where(active)
        .group_by(Category.name)
    ).all()
    totals = db.execute(select(value, func.coalesce(func.sum(Product.stock_quantity), 0)).where(active)).one()
    week_ago = datetime.now(timezone.utc) - timedelta(days=7)

    def count(*conditions: Any) -> int:
        return int(db.execute(select(func.count(Product.id)).where(active, *conditions)).scalar_one())

    return {
        "totalProducts": count(),
        "productsByCategory": [
            {"category": name, "count": int(n), "totalValue": float(total)} for name, n, total in by_category
        ],
        "lowStockCount": count(Product.stock_quantity <= LOW_STOCK_THRESHOLD),
        "outOfStockCount": count(Product.stock_quantity == 0),
        "lowStockThreshold": LOW_STOCK_THRESHOLD,
        "inventoryValue": {"totalValue": float(totals[0]), "totalItems": int(totals[1])},
        "recentProducts": count(Product.created_at >= week_ago),
    }


def _number(updates: dict[str, Any], key: str) -> float:
    value = updates.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    return float(value)


def bulk_update(db: Session, product_ids: list[uuid.UUID], operation: str | None, updates: dict[str, Any] | None) -> int:
    """Apply one bulk operation to the active products in ``product_ids``; returns rows changed."""

    if not product_ids:
        raise ValueError("Please provide product IDs")
    if not updates or not operation:
        raise ValueError("Please provide updates and operation type")

    values: dict[str, Any]
    if operation == "price_update":
        price_type = updates.get("priceType")
        if price_type == "percentage":
            values = {"price": Product.price * (1 + _number(updates, "percentage") / 100)}
        elif price_type == "fixed":
            values = {"price": Product.price + _number(updates, "amount")}
        elif price_type == "set":
            values = {"price": _number(updates, "newPrice")}
        else:
            raise ValueError("Invalid price update type")
    elif operation == "category_update":
        category_id = uuid.UUID(str(updates.get("categoryId")))
        _require_category(db, category_id)
        values = {"category_id": category_id}
    elif operation == "stock_update":
        stock_type = updates.get("stockType")
        quantity = int(_number(updates, "quantity"))
        if stock_type == "add":
            values = {"stock_quantity": Product.stock_quantity + quantity}
        elif stock_type == "subtract":
            floor = func.max if db.get_bind().dialect.name == "sqlite" else func.greatest
            floored = floor(Product.stock_quantity - quantity, 0)
            values = {"stock_quantity": floored}
        elif stock_type == "set":
            values = {"stock_quantity": max(0, quantity)}
        else:
            raise ValueError("Invalid stock update type")
    elif operation == "feature_update":
        values = {"is_featured": bool(updates.get("featured"))}
    elif operation == "status_update":
        values = {"is_active": bool(updates.get("active"))}
    else:
        raise ValueError("Invalid operation type")

    result = db.execute(
        update(Product)
        .where(Product.id.in_(product_ids), Product.is_active.is_(True))
        .values(**values, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("bulk_update", operation=operation, modified=result.rowcount)
    return int(result.rowcount or 0)


def admin_list_products(
    db: Session,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
    category: str | None = None,
    status: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    stock_status: str | None = None,
) -> tuple[list[Product], int]:
    conditions: list[Any] = []
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Product.name.ilike(pattern), Product.description.ilike(pattern), Product.sku.ilike(pattern)))
    if category and category != "all":
        conditions.append(Product.category_id == uuid.UUID(category))
    if status == "active":
        conditions.append(Product.is_active.is_(True))
    elif status == "inactive":
        conditions.append(Product.is_active.is_(False))
    if stock_status == "low":
        conditions.append(Product.stock_quantity <= LOW_STOCK_THRESHOLD)
    elif stock_status == "out":
        conditions.append(Product.stock_quantity == 0)
    elif stock_status == "available":
        conditions.append(Product.stock_quantity > LOW_STOCK_THRESHOLD)

    column = _SORTABLE.get(sort_by, Product.created_at)
    order = column.asc() if sort_order == "asc" else column.desc()
    stmt = _with_relations(select(Product).where(*conditions).order_by(order).offset((page - 1) * limit).limit(limit))
    total = int(db.execute(select(func.count(Product.id)).where(*conditions)).scalar_one())
    return list(db.execute(stmt).scalars()), total


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


# --- image storage --------------------------------------------------------


class ImageUploadError(ValueError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class UploadedImage:
    filename: str
    content_type: str
    content: bytes


@dataclass
class StoredImage:
    image_url: str
    public_id: str


def validate_images(images: list[UploadedImage]) -> None:
    settings = get_settings()
    if len(images) > settings.max_images_per_product:
        raise ImageUploadError(
            "TOO_MANY_FILES", f"Too many files. Maximum allowed is {settings.max_images_per_product} files."
        )
    max_bytes = settings.max_image_size_mb * 1024 * 1024
    for image in images:
        if image.content_type not in ALLOWED_IMAGE_TYPES:
            raise ImageUploadError("INVALID_FILE_TYPE", "Invalid file type. Only JPG, PNG and WEBP images are allowed.")
        if len(image.content) > max_bytes:
            raise ImageUploadError(
                "FILE_TOO_LARGE",
                f"File size too large. Maximum allowed size is {settings.max_image_size_mb}MB per file.",
            )


def _safe_stem(filename: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9_-]", "_", Path(filename).stem)[:60]
    return stem or "image"


def store_images(images: list[UploadedImage]) -> list[StoredImage]:
    settings = get_settings()
    directory = settings.product_upload_path
    directory.mkdir(parents=True, exist_ok=True)

    stored: list[StoredImage] = []
    try:
        for image in images:
            public_id = f"{uuid.uuid4().hex}_{_safe_stem(image.filename)}{ALLOWED_IMAGE_TYPES[image.content_type]}"
            (directory / public_id).write_bytes(image.content)
            stored.append(StoredImage(image_url=f"/uploads/products/{public_id}", public_id=public_id))
    except OSError:
        remove_stored_images([s.public_id for s in stored])
        raise
    return stored


def remove_stored_images(public_ids: list[str]) -> None:
    directory = get_settings().product_upload_path
    for public_id in public_ids:
        path = directory / Path(public_id).name
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("image_remove_failed", public_id=public_id, error=str(exc))


def create_product_with_images(db: Session, payload: ProductCreate, images: list[UploadedImage]) -> Product:
    validate_images(images)
    _require_category(db, payload.category_id)
    stored = store_images(images)
    try:
        product = Product(**payload.model_dump(exclude={"images"}))
        for index, image in enumerate(stored):
            product.images.append(
                ProductImage(image_url=image.image_url, public_id=image.public_id, is_primary=index == 0)
            )
        db.add(product)
        db.commit()
    except Exception:
        db.rollback()
        remove_stored_images([s.public_id for s in stored])
        raise
    return get_product(db, product.id)  # type: ignore[return-value]


def add_product_images(db: Session, product_id: uuid.UUID, images: list[UploadedImage]) -> tuple[Product, list[ProductImage]] | None:
    product = get_product(db, product_id)
    if product is None:
        return None
    validate_images(images)
    stored = store_images(images)
    first_upload = not product.images
    added = [
        ProductImage(image_url=s.image_url, public_id=s.public_id, is_primary=first_upload and index == 0)
        for index, s in enumerate(stored)
    ]
    try:
        product.images.extend(added)
        db.commit()
    except Exception:
        db.rollback()
        remove_stored_images([s.public_id for s in stored])
        raise
    return get_product(db, product_id), added  # type: ignore[return-value]


def delete_product_image(db: Session, image_id: uuid.UUID) -> bool:
    image = db.get(ProductImage, image_id)
    if image is None:
        return False
    if image.is_primary:
        successor = db.execute(
            select(ProductImage)
            .where(ProductImage.product_id == image.product_id, ProductImage.id != image.id)
            .order_by(ProductImage.created_at)
            .limit(1)
        ).scalar_one_or_none()
        if successor is not None:
            successor.is_primary = True
    public_id = image.public_id
    db.delete(image)
    db.commit()
    if public_id:
        remove_stored_images([public_id])
    return True


def set_primary_image(db: Session, image_id: uuid.UUID) -> ProductImage | None:
    image = db.get(ProductImage, image_id)
    if image is None:
        return None
    db.execute(
        update(ProductImage)
        .where(ProductImage.product_id == image.product_id)
        .values(is_primary=ProductImage.id == image.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(image)
    return image
