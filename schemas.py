"""
Database Schemas for the commerce API

Each collection model below represents one MongoDB collection. The collection
name is the lowercase class name (User -> "user"). Field names are stored and
returned in camelCase; Python code uses the snake_case attribute names.

The *Create / *Update / *In models are request payloads. Unknown fields in a
payload are ignored, so a client cannot set derived fields such as
`rating` or `reviewCount`, or smuggle a `price` into an order item.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, use_enum_values=True, validate_default=True
    )

    def to_document(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, **kwargs)


# ---------- Collections ----------
class User(CamelModel):
    name: Optional[str] = None
    email: EmailStr
    hashed_password: Optional[str] = None
    role: Role = Role.CUSTOMER
    image: Optional[str] = None


class Category(CamelModel):
    name: str
    slug: str = Field(..., description="URL-safe identifier, globally unique")
    description: Optional[str] = None
    image: Optional[str] = None
    parent_id: Optional[str] = None


class ProductVariant(CamelModel):
    name: str = Field(..., description="e.g., Red / M")
    sku: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = 0
    attributes: Dict[str, Any] = Field(default_factory=dict, description="e.g., {'size': 'M'}")


class Product(CamelModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = 0
    images: List[str] = []
    featured: bool = False
    is_active: bool = True
    category_id: str
    rating: float = 0.0
    review_count: int = 0
    variants: List[ProductVariant] = []


class Address(CamelModel):
    name: str
    address_line1: str
    address_line2: Optional[str] = ""
    city: str
    state: str
    postal_code: str
    country: str
    phone: Optional[str] = ""


class OrderItem(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0)
    price: float = Field(..., description="Product price when the order was placed")


class Order(CamelModel):
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    total: float
    payment_intent_id: Optional[str] = None
    shipping_address_id: str
    tracking_number: Optional[str] = None
    tracking_company: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItem]


class Review(CamelModel):
    user_id: str
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = ""
    comment: Optional[str] = ""


# ---------- Request payloads ----------
class CategoryCreate(CamelModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    parent_id: Optional[str] = None


class CategoryUpdate(CamelModel):
    name: Optional[str] = None
    slug: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    parent_id: Optional[str] = None


class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = 0
    images: List[str] = []
    featured: bool = False
    is_active: bool = True
    category_id: str
    variants: List[ProductVariant] = []


class ProductUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: Optional[int] = None
    images: Optional[List[str]] = None
    featured: Optional[bool] = None
    is_active: Optional[bool] = None
    category_id: Optional[str] = None
    variants: Optional[List[ProductVariant]] = None


class OrderItemIn(CamelModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    variant_id: Optional[str] = None


class OrderCreate(CamelModel):
    items: List[OrderItemIn] = []
    shipping_address: Optional[Address] = None
    payment_intent_id: Optional[str] = None


class OrderUpdate(CamelModel):
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    tracking_company: Optional[str] = None
    notes: Optional[str] = None


class ReviewCreate(CamelModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: Optional[str] = None


class ReviewUpdate(CamelModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


class UserCreate(CamelModel):
    name: Optional[str] = None
    email: EmailStr
    password: Optional[str] = None
    role: Role = Role.CUSTOMER
    image: Optional[str] = None


class UserUpdate(CamelModel):
    name: Optional[str] = None
    image: Optional[str] = None
    role: Optional[Role] = None
    password: Optional[str] = None


class ProfileUpdate(CamelModel):
    name: Optional[str] = None
    image: Optional[str] = None
