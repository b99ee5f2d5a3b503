"""Orders API router."""
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from auth import get_current_user, require_admin
from database import get_db
from dependencies import get_order_service, get_trusted_payment_token
from errors import NotFoundError
from models import OrderStatus, User, UserRole
from schemas import (
    CancelOrderResponse,
    CreateOrderRequest,
    DeleteOrderResponse,
    OrderCreatedResponse,
    OrderResponse,
    UpdateOrderRequest,
)
from services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderCreatedResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
    trusted_token: Optional[str] = Depends(get_trusted_payment_token),
):
    """
    Place an order.

    Without a trusted-payment cookie the order stays pending until the
    emailed verification link is opened.
    """
    result = await order_service.create_order(
        db,
        user.id,
        [item.model_dump() for item in request.items],
        order_service.is_trusted_payment(trusted_token, user.id),
    )
    return OrderCreatedResponse(
        order=OrderResponse.from_order(result["order"]),
        requires_verification=result["requires_verification"],
        message=result.get("message"),
    )


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    user_id: Optional[int] = Query(None),
    status: Optional[OrderStatus] = Query(None),
    min_total: Optional[Decimal] = Query(None, ge=0),
    max_total: Optional[Decimal] = Query(None, ge=0),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
):
    orders = order_service.list_all_orders(db, user_id, status, min_total, max_total)
    return [OrderResponse.from_order(order) for order in orders]


@router.get("/me", response_model=List[OrderResponse])
async def get_my_orders(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
):
    return await order_service.get_user_orders(db, user.id)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int = Path(..., description="Order ID"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
):
    order = order_service.get_order_by_id(db, order_id)
    # Other users' orders look missing
    if user.role != UserRole.ADMIN and order.user_id != user.id:
        raise NotFoundError("Order")
    return OrderResponse.from_order(order)


@router.put("/{order_id}", response_model=OrderResponse)
async def update_order(
    request: UpdateOrderRequest,
    order_id: int = Path(..., description="Order ID"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
):
    items = None if request.items is None else [item.model_dump() for item in request.items]
    order = await order_service.update_order(db, order_id, request.status, items)
    return OrderResponse.from_order(order)


@router.delete("/{order_id}", response_model=DeleteOrderResponse)
async def delete_order(
    order_id: int = Path(..., description="Order ID"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
):
    return await order_service.delete_order(db, order_id)


@router.post("/{order_id}/cancel", response_model=CancelOrderResponse)
async def cancel_order(
    order_id: int = Path(..., description="Order ID"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
):
    result = await order_service.cancel_order_by_user(db, order_id, user.id)
    return CancelOrderResponse(message=result["message"], order=OrderResponse.from_order(result["order"]))
