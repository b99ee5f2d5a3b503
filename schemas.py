"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from models import Order, OrderStatus, UserRole


class MessageResponse(BaseModel):
    message: str


# Users and auth

class UserCreate(BaseModel):
    """Schema for registering a user."""
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=8, max_length=128)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginResponse(BaseModel):
    """First sign-in step; tokens are only present when no code is required."""
    message: str
    requires_code: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None


class VerifyLoginCodeRequest(BaseModel):
    code: str = Field(pattern=r"^\d{6}$")
    remember_device: bool = False


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class EmailVerificationRequest(BaseModel):
    email: str


class UserResponse(BaseModel):
    """Schema for user response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    balance: Decimal
    role: UserRole
    email_verified: bool
    notify_balance_updates: bool


class BalanceTopUpRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


# Products

class ProductCreate(BaseModel):
    """Schema for creating a product."""
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    stock: int = Field(ge=0)


class ProductUpdate(BaseModel):
    """Schema for updating a product; omitted fields are left unchanged."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    stock: Optional[int] = Field(default=None, ge=0)


class ProductResponse(BaseModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: int


# Cart

class CartLine(BaseModel):
    """One product in a cart; a product appears on at most one line."""
    product_id: int
    quantity: int
    added_at: datetime


class Cart(BaseModel):
    """Cart document stored in Redis under cart:<user_id>."""
    user_id: int
    items: List[CartLine] = Field(default_factory=list)
    updated_at: datetime


class AddToCartRequest(BaseModel):
    """Schema for add to cart request."""
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0, le=1000)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(gt=0, le=1000)


class CartSummaryItem(BaseModel):
    """Schema for cart item in response."""
    product_id: int
    product_name: str
    product_price: Decimal
    quantity: int
    subtotal: Decimal


class CartSummary(BaseModel):
    """Schema for cart response."""
    user_id: int
    items: List[CartSummaryItem]
    total: Decimal
    item_count: int
    updated_at: datetime


# Orders

class OrderItemRequest(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0, le=1000)


class CreateOrderRequest(BaseModel):
    """Schema for creating an order directly from line items."""
    items: List[OrderItemRequest] = Field(min_length=1, max_length=50)


class UpdateOrderRequest(BaseModel):
    """Admin order update; both fields optional."""
    status: Optional[OrderStatus] = None
    items: Optional[List[OrderItemRequest]] = Field(default=None, min_length=1, max_length=50)


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    quantity: int
    unit_price: Decimal


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: int
    user_id: Optional[int] = None
    status: OrderStatus
    total: Decimal
    created_at: datetime
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemResponse]

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            user_id=order.user_id,
            status=order.status,
            total=order.total,
            created_at=order.created_at,
            cancelled_at=order.cancelled_at,
            items=[
                OrderItemResponse(
                    id=item.id,
                    product_id=item.product_id,
                    product_name=item.product.name if item.product is not None else None,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in order.items
            ],
        )


class OrderCreatedResponse(BaseModel):
    order: OrderResponse
    requires_verification: bool
    message: Optional[str] = None


class OrderVerificationResponse(BaseModel):
    message: str
    order: OrderResponse
    already_completed: bool


class CancelOrderResponse(BaseModel):
    message: str
    order: OrderResponse


class DeleteOrderResponse(BaseModel):
    ok: bool
    message: str
