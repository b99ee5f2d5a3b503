"""Dependency injection for services."""
from typing import Optional

from fastapi import Cookie, Request

from config import PENDING_AUTH_COOKIE, TRUSTED_DEVICE_COOKIE, TRUSTED_PAYMENT_COOKIE
from services.auth_service import AuthService
from services.cart_service import CartService
from services.order_service import OrderService
from services.product_service import ProductService
from services.user_service import UserService


def get_user_service(request: Request) -> UserService:
    return request.app.state.user_service


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_product_service(request: Request) -> ProductService:
    return request.app.state.product_service


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_cart_service(request: Request) -> CartService:
    return request.app.state.cart_service


def get_trusted_payment_token(
    trusted_payment: Optional[str] = Cookie(None, alias=TRUSTED_PAYMENT_COOKIE),
) -> Optional[str]:
    """Raw trusted-payment cookie; verified against the user by OrderService.is_trusted_payment."""
    return trusted_payment


def get_trusted_device_token(
    trusted_device: Optional[str] = Cookie(None, alias=TRUSTED_DEVICE_COOKIE),
) -> Optional[str]:
    return trusted_device


def get_pending_auth_token(
    pending_auth: Optional[str] = Cookie(None, alias=PENDING_AUTH_COOKIE),
) -> Optional[str]:
    return pending_auth
