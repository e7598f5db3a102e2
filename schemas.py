"""
Request and response schemas for the grocery storefront API.

Response models read straight off the SQLAlchemy rows (from_attributes), so
the joined display fields (customer_name, product name/price/image) are
properties on the mapped classes in models.py.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# Auth
class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    mobile: Optional[str] = None
    role: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = Field(None, description="Role the caller expects to log in as")


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: str


class AuthResponse(BaseModel):
    user: UserOut
    token: str


# Catalog
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2, description="Unit price")
    stock: int = Field(..., ge=0, description="Units in stock")
    image_url: Optional[str] = Field(None, max_length=255)


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: int
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Cart
class CartAddRequest(BaseModel):
    product_id: int = Field(..., validation_alias=AliasChoices("productId", "product_id"))
    quantity: int = 1


class CartQuantityRequest(BaseModel):
    quantity: Optional[int] = None


class CartItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    product_id: int
    quantity: int
    name: str
    price: Decimal
    image_url: Optional[str] = None
    stock: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    message: str


# Orders
class OrderLineIn(BaseModel):
    product_id: int = Field(..., validation_alias=AliasChoices("id", "productId", "product_id"))
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class CheckoutRequest(BaseModel):
    items: List[OrderLineIn] = Field(..., min_length=1)
    address: str = Field(..., min_length=1, description="Shipping address")
    payment_method: str = Field("cash", description="Payment tag, recorded in logs only")


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    price: Decimal
    name: Optional[str] = None
    image_url: Optional[str] = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    customer_name: Optional[str] = None
    status: str
    total_amount: Decimal
    shipping_address: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []


class StatusUpdateRequest(BaseModel):
    status: str
