"""Cart API router."""
from typing import Optional

from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from dependencies import get_cart_service, get_trusted_payment_token
from models import User
from schemas import (
    AddToCartRequest,
    CartSummary,
    MessageResponse,
    OrderCreatedResponse,
    OrderResponse,
    UpdateCartItemRequest,
)
from services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartSummary)
async def get_cart(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service),
):
    return await cart_service.get_cart_summary(db, user.id)


@router.post("/items", response_model=CartSummary)
async def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service),
):
    """Add item to cart - requires authentication."""
    await cart_service.add_item(db, user.id, request.product_id, request.quantity)
    return await cart_service.get_cart_summary(db, user.id)


@router.put("/items/{product_id}", response_model=CartSummary)
async def update_cart_item(
    request: UpdateCartItemRequest,
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service),
):
    await cart_service.update_item_quantity(db, user.id, product_id, request.quantity)
    return await cart_service.get_cart_summary(db, user.id)


@router.delete("/items/{product_id}", response_model=CartSummary)
async def remove_cart_item(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service),
):
    await cart_service.remove_item(user.id, product_id)
    return await cart_service.get_cart_summary(db, user.id)


@router.delete("", response_model=MessageResponse)
async def clear_cart(
    user: User = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service),
):
    await cart_service.clear_cart(user.id)
    return MessageResponse(message="Cart cleared")


@router.post("/checkout", response_model=OrderCreatedResponse, status_code=201)
async def checkout(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service),
    trusted_token: Optional[str] = Depends(get_trusted_payment_token),
):
    """Place an order for everything in the cart."""
    trusted = cart_service.order_service.is_trusted_payment(trusted_token, user.id)
    result = await cart_service.checkout(db, user.id, trusted)
    return OrderCreatedResponse(
        order=OrderResponse.from_order(result["order"]),
        requires_verification=result["requires_verification"],
        message=result.get("message"),
    )
