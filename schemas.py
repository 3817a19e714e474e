"""
Database Schemas

MongoDB collection schemas for the FixieStore API, defined as Pydantic models.
These schemas validate request payloads before anything reaches the database.

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- Category -> "category" collection
- Product -> "product" collection
- CartItem -> "cartitem" collection
"""

from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, List, Literal, Dict, Any

ShippingMethod = Literal["regular", "express"]
PaymentMethod = Literal["transfer", "ewallet"]
OrderStatus = Literal["pending", "paid"]
PaymentEvent = Literal["success", "pending", "error", "close"]

class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Salted password hash")
    role: Literal["user", "admin"] = Field("user", description="User role")

class Category(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: Optional[str] = None

class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    long_description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    image_url: Optional[str] = None
    images: List[str] = Field(default_factory=list, description="Gallery image URLs")
    brand: Optional[str] = None
    category_id: Optional[str] = Field(None, description="Category id, or null")
    specifications: Dict[str, Any] = Field(default_factory=dict, description="Key-value specs")
    variants: Dict[str, List[str]] = Field(default_factory=dict, description="Option name -> values")
    related_products: List[str] = Field(default_factory=list, description="Related product ids")

class Review(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str

    @field_validator("comment")
    @classmethod
    def comment_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("comment must not be empty")
        return v.strip()

class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)

class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int

class Order(BaseModel):
    user_id: str
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_method: PaymentMethod
    shipping_method: ShippingMethod
    idempotency_key: str
    snap_token: Optional[str] = None
    redirect_url: Optional[str] = None

class Notification(BaseModel):
    title: str
    description: Optional[str] = None
    variant: Literal["default", "destructive"] = "default"

# Request payloads

class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)

class LoginIn(BaseModel):
    email: EmailStr
    password: str

class CartAddIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class CartUpdateIn(BaseModel):
    quantity: int = Field(..., ge=1)

class CheckoutIn(BaseModel):
    payment_method: PaymentMethod = "transfer"
    shipping_method: ShippingMethod = "regular"

class PaymentResultIn(BaseModel):
    event: PaymentEvent
    result: Dict[str, Any] = Field(default_factory=dict, description="Raw widget callback payload")
