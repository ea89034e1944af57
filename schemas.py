"""
Database Schemas for the Kalakriti marketplace

Each document model maps to a MongoDB collection:
- User -> "users"
- Product -> "products"
- Order -> "orders"
- Notification -> "notifications"

Stored documents and API payloads share the camelCase field names
(totalAmount, shippingAddress, orderNumber, createdAt); the models use
snake_case attributes with camelCase aliases.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["artisan", "buyer"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
NotificationType = Literal["order", "payment", "update", "promotion", "system"]

ROLES = ("artisan", "buyer")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# Collections

class User(CamelModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    password: str = Field(..., description="BCrypt password hash")
    role: Role
    wallet: float = Field(0, description="Wallet balance")
    status: str = "active"


class Ratings(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(CamelModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    category: str
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list, description="Image URLs")
    artisan: str = Field(..., description="Owning artisan user id")
    ratings: Optional[Ratings] = None


class OrderItem(BaseModel):
    product: str = Field(..., description="Product id")
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of purchase")


class ShippingAddress(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class Order(CamelModel):
    buyer: str
    products: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    shipping_address: ShippingAddress
    order_number: str


class Notification(CamelModel):
    user: str
    type: NotificationType
    message: str
    read: bool = False


# Request bodies

class RegisterRequest(BaseModel):
    # Presence and role are checked by auth.register_user so the messages
    # match the login/register contract.
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(..., ge=0)
    category: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    images: Optional[List[str]] = Field(None, description="Base64 encoded images")


class OrderCreate(CamelModel):
    products: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    shipping_address: ShippingAddress


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class AddFundsRequest(BaseModel):
    amount: float = Field(..., allow_inf_nan=False)


# Responses

class PublicUser(BaseModel):
    id: str
    name: str
    email: str
    role: str


class TokenResponse(BaseModel):
    success: bool = True
    token: str
    user: PublicUser


class BalanceResponse(BaseModel):
    balance: float


class CategorySummary(BaseModel):
    name: str
    icon: Optional[str] = None
    description: Optional[str] = None
    products: int


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
