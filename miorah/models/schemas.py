from __future__ import annotations

import re
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictBool, field_validator

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError("Please include a valid email")
    return value


EmailAddress = Annotated[str, AfterValidator(_check_email)]


# --- auth / users ---------------------------------------------------------


class RegisterRequest(BaseModel):
    firstname: str = Field(min_length=2, max_length=30, pattern=r"^[a-zA-Z\s]+$")
    lastname: str = Field(min_length=2, max_length=30, pattern=r"^[a-zA-Z\s]+$")
    username: str = Field(min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_]+$")
    email: EmailAddress
    password: str = Field(min_length=6, max_length=100)

    @field_validator("password")
    @classmethod
    def _password_strength(cls, value: str) -> str:
        if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
            raise ValueError("Password must contain at least one letter and one number")
        return value


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, description="Email address or username")
    password: str


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    firstname: str | None = Field(default=None, min_length=2, max_length=30, pattern=r"^[a-zA-Z\s]+$")
    lastname: str | None = Field(default=None, min_length=2, max_length=30, pattern=r"^[a-zA-Z\s]+$")
    username: str | None = Field(default=None, min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_]+$")
    email: str | None = None
    phone: str | None = Field(default=None, max_length=40)
    gender: str | None = Field(default=None, max_length=20)
    password: str | None = Field(default=None, min_length=6, max_length=100)
    current_password: str | None = Field(default=None, alias="currentPassword")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str | None) -> str | None:
        return _check_email(value) if value is not None else None


class AvailabilityRequest(BaseModel):
    username: str | None = None
    email: str | None = None


class EmailRequest(BaseModel):
    email: EmailAddress


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=6, max_length=100)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    firstname: str
    lastname: str
    username: str
    email: str
    phone: str | None = None
    gender: str | None = None
    is_admin: bool = Field(serialization_alias="isAdmin")
    is_email_verified: bool = Field(serialization_alias="isEmailVerified")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class LoginResponse(BaseModel):
    token: str
    user: UserOut


class MonthCount(BaseModel):
    month: int
    total: float


# --- catalog --------------------------------------------------------------


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None


class CategoryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None = None
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class ImageRef(BaseModel):
    image_url: str = Field(min_length=1)


class ProductImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    image_url: str
    is_primary: bool
    created_at: datetime = Field(serialization_alias="createdAt")


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    category_id: uuid.UUID
    description: str = Field(min_length=1)
    price: float = Field(ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    discount_price: float | None = Field(default=None, ge=0)
    sku: str | None = Field(default=None, max_length=64)
    is_featured: bool = False
    images: list[ImageRef] | None = None


class ProductUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    category_id: uuid.UUID | None = None
    description: str | None = Field(default=None, min_length=1)
    price: float | None = Field(default=None, ge=0)
    stock_quantity: int | None = Field(default=None, ge=0)
    discount_price: float | None = Field(default=None, ge=0)
    sku: str | None = Field(default=None, max_length=64)
    is_featured: bool | None = None
    is_active: bool | None = None
    images: list[ImageRef] | None = None


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    category_id: uuid.UUID
    category: CategoryOut | None = None
    description: str
    price: float
    discount_price: float | None = None
    stock_quantity: int
    sku: str | None = None
    is_featured: bool
    is_active: bool
    images: list[ProductImageOut] = []
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class BulkUpdateRequest(BaseModel):
    product_ids: list[uuid.UUID] = Field(default_factory=list, alias="productIds")
    updates: dict[str, Any] | None = None
    operation: str | None = None


class Pagination(BaseModel):
    current_page: int = Field(serialization_alias="currentPage")
    total_pages: int = Field(serialization_alias="totalPages")
    total: int
    has_next_page: bool = Field(serialization_alias="hasNextPage")
    has_prev_page: bool = Field(serialization_alias="hasPrevPage")
    limit: int


class ProductPage(BaseModel):
    products: list[ProductOut]
    pagination: Pagination


class ProductUploadResponse(BaseModel):
    product: ProductOut
    images: list[ProductImageOut]


class ProductImagesResponse(BaseModel):
    product: ProductOut
    new_images: list[ProductImageOut] = Field(serialization_alias="newImages")
    all_images: list[ProductImageOut] = Field(serialization_alias="allImages")


# --- cart -----------------------------------------------------------------


class CartRequest(BaseModel):
    user_id: uuid.UUID | None = Field(default=None, alias="userId")
    products: list[Any] = Field(default_factory=list)


class CartOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID = Field(serialization_alias="userId")
    products: list[dict[str, Any]]
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


# --- orders ---------------------------------------------------------------


class Address(BaseModel):
    model_config = ConfigDict(extra="allow")

    firstname: str | None = None
    lastname: str | None = None
    email: str | None = None
    phone: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postalCode: str | None = None
    country: str | None = None


class GuestOrderCreate(BaseModel):
    products: list[Any] = Field(min_length=1)
    amount: float = Field(ge=0)
    address: Address
    payment_id: str | None = Field(default=None, alias="paymentId", max_length=128)


class OrderCreate(GuestOrderCreate):
    user: uuid.UUID


class OrderStatusUpdate(BaseModel):
    status: str


class OrderUpdate(BaseModel):
    products: list[Any] | None = None
    amount: float | None = Field(default=None, ge=0)
    address: Address | None = None
    status: Literal["pending", "processing", "shipped", "delivered", "cancelled"] | None = None
    payment_id: str | None = Field(default=None, alias="paymentId", max_length=128)


class OrderCustomer(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    firstname: str
    lastname: str
    username: str
    email: str


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID | None = Field(serialization_alias="userId")
    user: OrderCustomer | None = None
    products: list[Any]
    amount: float
    address: dict[str, Any]
    customer_name: str = Field(serialization_alias="customerName")
    customer_email: str = Field(serialization_alias="customerEmail")
    status: str
    payment_id: str | None = Field(default=None, serialization_alias="paymentId")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class OrderPage(BaseModel):
    orders: list[OrderOut]
    pagination: Pagination


# --- contact --------------------------------------------------------------


class ContactRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: EmailAddress
    phone: str | None = None
    subject: str = Field(min_length=1)
    message: str = Field(min_length=10, max_length=1000)
    marketing_consent: StrictBool = Field(alias="marketingConsent")

    @field_validator("name", "subject", "message", "phone", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


# --- security -------------------------------------------------------------


class CSRFTokenResponse(BaseModel):
    csrf_token: str = Field(serialization_alias="csrfToken")
    expires: int


def format_validation_errors(errors: Sequence[Any]) -> list[dict[str, str]]:
    """Flatten pydantic error dicts into ``[{field, msg}]``."""

    formatted = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(error.get("msg", "Invalid value"))
        formatted.append({"field": ".".join(loc), "msg": message.removeprefix("Value error, ")})
    return formatted
