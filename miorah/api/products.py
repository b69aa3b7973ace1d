from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session

from miorah.db.models import Product, ProductImage, User
from miorah.db.session import get_db
from miorah.models.schemas import (
    BulkUpdateRequest,
    Pagination,
    ProductCreate,
    ProductImageOut,
    ProductImagesResponse,
    ProductOut,
    ProductPage,
    ProductUpdate,
    ProductUploadResponse,
)
from miorah.security.rate_limit import upload_rate_limiter
from miorah.services import catalog_service
from miorah.services.auth_dependencies import require_admin
from miorah.services.catalog_service import ImageUploadError, UploadedImage

router = APIRouter(prefix="/api/products", tags=["products"])


async def _read_uploads(files: list[UploadFile]) -> list[UploadedImage]:
    images = []
    for file in files:
        if not file.filename:
            continue
        images.append(
            UploadedImage(
                filename=file.filename,
                content_type=(file.content_type or "").lower(),
                content=await file.read(),
            )
        )
    return images


def _upload_error(exc: ImageUploadError) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": exc.code, "message": str(exc)})


@router.get("", response_model=list[ProductOut])
async def list_products(
    new: bool = False,
    category: uuid.UUID | None = None,
    featured: bool = False,
    db: Session = Depends(get_db),
):
    return catalog_service.list_products(db, newest=new, category_id=category, featured=featured)


@router.get("/admin/all", response_model=ProductPage)
async def admin_list_products(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: str | None = None,
    category: str | None = None,
    status: str | None = None,
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
    stock_status: str | None = Query(default=None, alias="stockStatus"),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductPage:
    try:
        products, total = catalog_service.admin_list_products(
            db,
            page=page,
            limit=limit,
            search=search,
            category=category,
            status=status,
            sort_by=sort_by,
            sort_order=sort_order,
            stock_status=stock_status,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    pages = catalog_service.total_pages(total, limit)
    return ProductPage(
        products=[ProductOut.model_validate(p) for p in products],
        pagination=Pagination(
            current_page=page,
            total_pages=pages,
            total=total,
            has_next_page=page < pages,
            has_prev_page=page > 1,
            limit=limit,
        ),
    )


@router.get("/inventory/low-stock", response_model=list[ProductOut])
async def low_stock(
    threshold: int = Query(default=catalog_service.LOW_STOCK_THRESHOLD, ge=0),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return catalog_service.low_stock_products(db, threshold)


@router.get("/inventory/stats")
async def inventory_stats(_: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    return catalog_service.inventory_stats(db)


@router.put("/inventory/bulk-update")
async def bulk_update(payload: BulkUpdateRequest, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    try:
        modified = catalog_service.bulk_update(db, payload.product_ids, payload.operation, payload.updates)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"msg": "Bulk update completed successfully", "modifiedCount": modified, "operation": payload.operation}


@router.post(
    "/upload",
    response_model=ProductUploadResponse,
    status_code=201,
    dependencies=[Depends(upload_rate_limiter)],
)
async def create_product_with_upload(
    name: str = Form(...),
    category_id: str = Form(...),
    description: str = Form(...),
    price: str = Form(...),
    stock_quantity: str = Form(default="0"),
    discount_price: str | None = Form(default=None),
    sku: str | None = Form(default=None),
    is_featured: str | None = Form(default=None),
    product_images: list[UploadFile] = File(default=[]),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductUploadResponse:
    try:
        payload = ProductCreate(
            name=name,
            category_id=category_id,
            description=description,
            price=price,
            stock_quantity=stock_quantity,
            discount_price=discount_price or None,
            sku=sku or None,
            is_featured=is_featured == "true",
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    images = await _read_uploads(product_images)
    try:
        product = catalog_service.create_product_with_images(db, payload, images)
    except ImageUploadError as exc:
        raise _upload_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    out = ProductOut.model_validate(product)
    return ProductUploadResponse(product=out, images=out.images)


@router.put("/images/{id}/primary", response_model=ProductImageOut)
async def set_primary_image(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> ProductImage:
    image = catalog_service.set_primary_image(db, id)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return image


@router.delete("/images/{id}")
async def delete_image(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    if not catalog_service.delete_product_image(db, id):
        raise HTTPException(status_code=404, detail="Image not found")
    return {"msg": "Image removed"}


@router.get("/{id}", response_model=ProductOut)
async def get_product(id: uuid.UUID, db: Session = Depends(get_db)) -> Product:
    product = catalog_service.get_product(db, id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("", response_model=ProductOut, status_code=201)
async def create_product(payload: ProductCreate, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> Product:
    try:
        return catalog_service.create_product(db, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.put("/{id}", response_model=ProductOut)
async def update_product(
    id: uuid.UUID, payload: ProductUpdate, _: User = Depends(require_admin), db: Session = Depends(get_db)
) -> Product:
    try:
        product = catalog_service.update_product(db, id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.put("/{id}/upload", response_model=ProductImagesResponse, dependencies=[Depends(upload_rate_limiter)])
async def add_product_images(
    id: uuid.UUID,
    product_images: list[UploadFile] = File(default=[]),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductImagesResponse:
    images = await _read_uploads(product_images)
    try:
        result = catalog_service.add_product_images(db, id, images)
    except ImageUploadError as exc:
        raise _upload_error(exc) from exc
    if result is None:
        raise HTTPException(status_code=404, detail="Product not found")
    product, added = result
    out = ProductOut.model_validate(product)
    return ProductImagesResponse(
        product=out,
        new_images=[ProductImageOut.model_validate(image) for image in added],
        all_images=out.images,
    )


@router.delete("/{id}")
async def delete_product(id: uuid.UUID, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    if not catalog_service.deactivate_product(db, id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"msg": "Product deleted successfully"}
