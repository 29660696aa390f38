"""
Request and response schemas for the marketplace API.

Every table in models.py has a read model here, and every write endpoint has a
request model. Request models are the only place raw client input is coerced:
handlers receive already-validated objects. JSON keys are camelCase on the
wire (shopId, isVerified, totalPrice); attributes stay snake_case.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from moderation import (
    OrderStatus,
    PaymentMethod,
    ProductStatus,
    parse_order_status,
    parse_product_status,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def normalize_price(value) -> str:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError("price must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValueError("price must be a non-negative number")
    return str(amount)


# bcrypt refuses longer secrets
MAX_PASSWORD_BYTES = 72


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value.strip() if isinstance(value, str) else value


# Users

class User(ApiModel):
    id: int
    username: str
    role: str = "customer"
    is_admin: bool = False
    shop_name: Optional[str] = None
    shop_address: Optional[str] = None
    maps_link: Optional[str] = None


class SignupRequest(ApiModel):
    username: str = Field(..., min_length=3, max_length=150)
    password: str = Field(..., min_length=4)

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("username must be at least 3 characters")
        return v

    @field_validator("password")
    @classmethod
    def fits_bcrypt(cls, v: str) -> str:
        if len(v.encode()) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return v


class LoginRequest(ApiModel):
    username: str
    password: str


class TokenResponse(ApiModel):
    token: str
    user: User


class ProfileUpdate(ApiModel):
    shop_name: str = ""
    shop_address: str = ""
    maps_link: str = ""
    contact_number: str = ""


# Shops

class Shop(ApiModel):
    id: int
    owner_id: int
    name: str
    category: str
    description: Optional[str] = None
    address: Optional[str] = None
    phone: str
    mobile: str
    contact_number: Optional[str] = None
    image: Optional[str] = None
    rating: Optional[float] = 0
    review_count: Optional[int] = 0
    avg_rating: Optional[float] = 0
    is_featured: Optional[bool] = False
    approved: bool = True
    is_verified: bool = False
    created_at: Optional[datetime] = None


class ShopFields(ApiModel):
    name: str = Field(..., min_length=1)
    category: str = "General"
    description: Optional[str] = None
    address: Optional[str] = None
    phone: str = Field(..., min_length=1)
    mobile: str = Field(..., min_length=1)
    contact_number: Optional[str] = None
    image: Optional[str] = None


class ShopCreate(ShopFields):
    """Admin-side shop creation for an explicit owner."""

    owner_id: int = Field(..., gt=0)


class DefaultShopRequest(ShopFields):
    """Body of the partner "become a seller" call.

    Clients send the shop name, address and mobile under several keys; they
    are folded here, falling back to placeholders so the call never fails on a
    sparse body.
    """

    @model_validator(mode="before")
    @classmethod
    def fold_alternate_keys(cls, data):
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return data
        phone = data.get("phone") or "0000000000"
        mobile = data.get("mobile") or data.get("mobileNumber") or phone
        return {
            **data,
            "name": data.get("name") or data.get("shopName") or "Temp Shop",
            "category": data.get("category") or "General",
            "description": data.get("description") or "Auto-created default shop",
            "address": data.get("address") or data.get("shopAddress"),
            "phone": phone,
            "mobile": mobile,
            "contactNumber": data.get("contactNumber") or mobile,
        }


# Products

class Product(ApiModel):
    id: int
    shop_id: int
    seller_id: int
    name: str
    price: str
    image_url: Optional[str] = None
    category: str
    description: Optional[str] = None
    approved: bool = False
    status: ProductStatus = ProductStatus.PENDING
    created_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def resolve_status(cls, v):
        return parse_product_status(v.value if isinstance(v, ProductStatus) else v)


class ProductWithSeller(Product):
    shop_name: Optional[str] = None
    shop_address: Optional[str] = None
    contact_number: Optional[str] = None
    mobile: Optional[str] = None


class ProductCreate(ApiModel):
    # approved/status are not fields: whatever a client sends for them is dropped.
    name: str = Field(..., min_length=1)
    price: str = "0"
    category: str = "General"
    description: Optional[str] = None
    image_url: Optional[str] = None
    shop_id: Optional[int] = Field(None, gt=0)

    @field_validator("price", mode="before")
    @classmethod
    def check_price(cls, v):
        return normalize_price("0" if v is None else v)

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v):
        return _blank_to_none(v) or "General"


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    status: Optional[str] = None

    @field_validator("price", mode="before")
    @classmethod
    def check_price(cls, v):
        return None if v is None else normalize_price(v)

    @field_validator("status", mode="before")
    @classmethod
    def blank_status(cls, v):
        return _blank_to_none(v)

    def field_changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True, exclude={"status"})
        # name/price/category are required columns; null means "leave as is"
        return {k: v for k, v in changes.items() if v is not None or k in ("description", "image_url")}


# Categories

class Category(ApiModel):
    id: int
    name: str
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None


class CategoryCreate(ApiModel):
    name: str
    image_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Category name required")
        return v

    @field_validator("image_url", mode="before")
    @classmethod
    def clean_image(cls, v):
        return _blank_to_none(v)


class CategoryUpdate(ApiModel):
    name: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError("Name required")
        return v.strip() if v else v

    @field_validator("image_url", mode="before")
    @classmethod
    def clean_image(cls, v):
        return _blank_to_none(v)


# Offers

class Offer(ApiModel):
    id: int
    content: str
    is_active: bool = True
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None


class OfferCreate(ApiModel):
    content: str = Field(..., min_length=1)
    is_active: bool = True


class OfferUpdate(ApiModel):
    content: Optional[str] = Field(None, min_length=1)
    is_active: Optional[bool] = None


# Banners

class Banner(ApiModel):
    id: int
    image: str
    title: Optional[str] = ""
    link: Optional[str] = "/"
    created_at: Optional[datetime] = None


class BannerCreate(ApiModel):
    image: str = Field(..., min_length=1)
    title: str = ""
    link: str = "/"


class BannerUpdate(ApiModel):
    image: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = None
    link: Optional[str] = None


# Orders

class Order(ApiModel):
    id: int
    product_id: int
    shop_id: int
    customer_name: str
    customer_phone: str
    customer_address: str
    quantity: int
    total_price: str
    status: OrderStatus
    payment_method: Optional[PaymentMethod] = None
    created_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def resolve_status(cls, v):
        return parse_order_status(v.value if isinstance(v, OrderStatus) else v)


class OrderCreate(ApiModel):
    product_id: int = Field(..., gt=0)
    shop_id: int = Field(..., gt=0)
    customer_name: str = Field(..., min_length=1)
    customer_phone: str = Field(..., min_length=1)
    customer_address: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    total_price: str
    payment_method: Optional[PaymentMethod] = None

    @field_validator("total_price", mode="before")
    @classmethod
    def check_total(cls, v):
        return normalize_price(v)

    @field_validator("payment_method", mode="before")
    @classmethod
    def lower_method(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("customer_phone")
    @classmethod
    def strip_phone(cls, v: str) -> str:
        return v.strip()


class OrderStatusUpdate(ApiModel):
    status: OrderStatus

    @field_validator("status", mode="before")
    @classmethod
    def resolve_status(cls, v):
        if not isinstance(v, str):
            raise ValueError("status must be a string")
        return parse_order_status(v)


# Reviews

class Review(ApiModel):
    id: int
    product_id: int
    customer_name: str
    rating: int
    comment: str
    is_approved: bool = False
    created_at: Optional[datetime] = None


class ReviewCreate(ApiModel):
    customer_name: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


# Cart

class CartItem(ApiModel):
    id: int
    user_id: int
    product_id: int
    quantity: int
    created_at: Optional[datetime] = None


class CartItemCreate(ApiModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(1, ge=1)


# Misc. responses

class ShopList(ApiModel):
    data: List[Shop]


class UploadResult(ApiModel):
    urls: List[str]


class AdminStats(ApiModel):
    users: int
    shops: int
    products: int
    pending_products: int
    orders: int
