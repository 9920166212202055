"""
Request and document schemas for the AgroMart API.

Each document model correlates to a MongoDB collection:
- User -> "users"
- Category -> "categories"
- Product -> "products"
- Coupon -> "coupons"
- ReviewCreate -> "reviews"
- TicketCreate -> "tickets"
- BlogPost -> "blog_posts"
- Address -> "addresses"

Orders, carts and payment intents are assembled by their services from the
request models below.

Request models validate bodies at the route boundary; a failure is reported
as a 400 VALIDATION_ERROR with a field-level list.
"""
import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

PHONE_PATTERN = r"^[6-9]\d{9}$"
SLUG_PATTERN = r"^[a-z0-9-]+$"

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "processing", "paid", "failed", "refund_pending", "refunded"]
PaymentMethod = Literal["card", "upi", "netbanking", "cod"]
TicketStatus = Literal["OPEN", "PENDING", "RESOLVED"]
TicketPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
CouponType = Literal["percentage", "fixed"]


def _check_password(value: str) -> str:
    if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


def _normalize_code(value: str) -> str:
    return value.strip().upper()


# Core collections

class User(BaseModel):
    full_name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    phone: Optional[str] = None
    is_admin: bool = Field(False, description="Is admin user")
    is_active: bool = True


class Category(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    icon: Optional[str] = None
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)


class Product(BaseModel):
    name: str = Field(..., min_length=3, max_length=200)
    slug: str = Field(..., min_length=3, max_length=200, pattern=SLUG_PATTERN)
    description: str = Field(..., min_length=10, max_length=5000)
    price: float = Field(..., gt=0, description="Sale price")
    original_price: Optional[float] = Field(None, gt=0)
    stock: int = Field(0, ge=0, description="Units in stock")
    images: List[str] = Field(default_factory=list)
    category_id: str
    vendor_id: Optional[str] = None
    unit: Optional[str] = Field(None, max_length=30)
    tags: List[str] = Field(default_factory=list)
    is_featured: bool = False
    rating: float = Field(0.0, ge=0, le=5)
    review_count: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_prices(self):
        if self.original_price is not None and self.original_price < self.price:
            raise ValueError("Original price must be greater than or equal to sale price")
        return self


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=200)
    slug: Optional[str] = Field(None, min_length=3, max_length=200, pattern=SLUG_PATTERN)
    description: Optional[str] = Field(None, min_length=10, max_length=5000)
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    category_id: Optional[str] = None
    unit: Optional[str] = Field(None, max_length=30)
    tags: Optional[List[str]] = None
    is_featured: Optional[bool] = None

    @model_validator(mode="after")
    def check_prices(self):
        if self.price is not None and self.original_price is not None and self.original_price < self.price:
            raise ValueError("Original price must be greater than or equal to sale price")
        return self


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    icon: Optional[str] = None


# Auth

class RegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("full_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return _check_password(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return _check_password(v)

    @model_validator(mode="after")
    def must_differ(self):
        if self.current_password == self.new_password:
            raise ValueError("New password must be different from current password")
        return self


# Cart

class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=0, le=100)


class SyncCartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1, le=100)


class SyncCartRequest(BaseModel):
    items: List[SyncCartItem] = Field(..., max_length=50)


class ApplyCouponRequest(BaseModel):
    code: str = Field(..., min_length=3, max_length=50)

    @field_validator("code")
    @classmethod
    def normalize(cls, v: str) -> str:
        return _normalize_code(v)


# Coupons

class Coupon(BaseModel):
    code: str = Field(..., min_length=3, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    type: CouponType
    value: float = Field(..., ge=0)
    min_order_value: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = _normalize_code(v)
        if not re.match(r"^[A-Z0-9_-]+$", v):
            raise ValueError(
                "Coupon code must contain only uppercase letters, numbers, hyphens, and underscores"
            )
        return v

    @model_validator(mode="after")
    def check_rules(self):
        if self.type == "percentage" and self.value > 100:
            raise ValueError("Percentage must be between 0 and 100")
        if self.valid_from and self.valid_from >= self.valid_until:
            raise ValueError("Valid from date must be before valid until date")
        return self


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=3, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    type: Optional[CouponType] = None
    value: Optional[float] = Field(None, ge=0)
    min_order_value: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator("code")
    @classmethod
    def normalize(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_code(v) if v else v


class ValidateCouponRequest(BaseModel):
    code: str = Field(..., min_length=3, max_length=50)
    order_total: float = Field(..., ge=0)

    @field_validator("code")
    @classmethod
    def normalize(cls, v: str) -> str:
        return _normalize_code(v)


# Orders

class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address_line: str = Field(..., min_length=10, max_length=500)
    city: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    pincode: str = Field(..., pattern=r"^\d{6}$")
    country: str = Field("India", min_length=2, max_length=100)


class CheckoutRequest(BaseModel):
    address_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod
    coupon_code: Optional[str] = Field(None, min_length=3, max_length=50)

    @field_validator("coupon_code")
    @classmethod
    def normalize(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_code(v) if v else v

    @model_validator(mode="after")
    def address_required(self):
        if not self.address_id and not self.shipping_address:
            raise ValueError("Either address_id or shipping_address must be provided")
        return self


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, min_length=10, max_length=500)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)


class TrackingNote(BaseModel):
    description: str = Field(..., min_length=3, max_length=500)
    location: Optional[str] = Field(None, max_length=200)


# Payment

class PaymentIntentRequest(BaseModel):
    order_id: str
    amount: float = Field(..., gt=0)


class VerifyPaymentRequest(BaseModel):
    payment_id: str
    order_id: str
    signature: str


class RefundRequest(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, gt=0)


class SimulatePaymentRequest(BaseModel):
    payment_id: str


# Reviews

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=200)
    comment: str = Field(..., min_length=3, max_length=2000)
    images: List[str] = Field(default_factory=list, max_length=5)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=200)
    comment: Optional[str] = Field(None, min_length=3, max_length=2000)
    images: Optional[List[str]] = Field(None, max_length=5)


# Support

class TicketCreate(BaseModel):
    subject: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=10, max_length=5000)
    priority: TicketPriority = "MEDIUM"
    attachments: List[str] = Field(default_factory=list, max_length=5)


class TicketUpdate(BaseModel):
    subject: Optional[str] = Field(None, min_length=5, max_length=200)
    description: Optional[str] = Field(None, min_length=10, max_length=5000)
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None


class CommentCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)
    is_internal: bool = False


class AssignTicketRequest(BaseModel):
    assignee_id: Optional[str] = None


class ContactMessage(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    subject: str = Field(..., min_length=3, max_length=200)
    message: str = Field(..., min_length=10, max_length=5000)


class NewsletterRequest(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


# Blog

class BlogPost(BaseModel):
    title: str = Field(..., min_length=3, max_length=200)
    slug: Optional[str] = Field(None, min_length=3, max_length=200, pattern=SLUG_PATTERN)
    excerpt: Optional[str] = Field(None, max_length=500)
    content: str = Field(..., min_length=10)
    cover_image: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    tags: List[str] = Field(default_factory=list)
    author: Optional[str] = Field(None, max_length=100)
    published: bool = False
    featured: bool = False


class BlogPostUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    slug: Optional[str] = Field(None, min_length=3, max_length=200, pattern=SLUG_PATTERN)
    excerpt: Optional[str] = Field(None, max_length=500)
    content: Optional[str] = Field(None, min_length=10)
    cover_image: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    tags: Optional[List[str]] = None
    author: Optional[str] = Field(None, max_length=100)
    published: Optional[bool] = None
    featured: Optional[bool] = None


# Addresses

class Address(ShippingAddress):
    is_default: bool = False


class AddressUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address_line: Optional[str] = Field(None, min_length=10, max_length=500)
    city: Optional[str] = Field(None, min_length=2, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=100)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    country: Optional[str] = Field(None, min_length=2, max_length=100)
    is_default: Optional[bool] = None


# Wishlist

class WishlistItem(BaseModel):
    product_id: str


class MoveToCartRequest(BaseModel):
    product_ids: List[str] = Field(..., min_length=1, max_length=50)


# Admin

class AdminUserUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    is_admin: Optional[bool] = None
    is_active: Optional[bool] = None
