"""Authentication API router."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from config import (
    LOGIN_CODE_EXPIRY_MINUTES,
    PENDING_AUTH_COOKIE,
    TRUSTED_DEVICE_COOKIE,
    TRUSTED_DEVICE_EXPIRES_DAYS,
    TRUSTED_PAYMENT_COOKIE,
    TRUSTED_PAYMENT_EXPIRES_DAYS,
)
from database import get_db
from dependencies import (
    get_auth_service,
    get_order_service,
    get_pending_auth_token,
    get_trusted_device_token,
)
from errors import AuthenticationError
from monitoring import auth_failures_counter
from schemas import (
    EmailVerificationRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OrderResponse,
    OrderVerificationResponse,
    RefreshTokenRequest,
    TokenResponse,
    UserCreate,
    UserResponse,
    VerifyLoginCodeRequest,
)
from services.auth_service import AuthService
from services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: UserCreate,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Create an account; a verification link is emailed to the address."""
    return await auth_service.register(db, request)


@router.get("/verify-email", response_model=MessageResponse)
async def verify_email(
    token: str = Query(..., description="Token from the verification email"),
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    await auth_service.verify_email(db, token)
    return MessageResponse(message="Email verified successfully")


@router.post("/verify-email/request", response_model=MessageResponse)
async def request_email_verification(
    request: EmailVerificationRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    await auth_service.request_email_verification(db, request.email)
    return MessageResponse(message="Verification email sent")


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    response: Response,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    trusted_device: Optional[str] = Depends(get_trusted_device_token),
):
    """
    Check email and password.

    From a trusted device the tokens are returned straight away. Otherwise a
    login code is emailed and a short-lived pending_auth cookie is set for
    /auth/login/verify.
    """
    try:
        result = await auth_service.request_login_code(db, request.email, request.password, trusted_device)
    except AuthenticationError:
        auth_failures_counter.add(1, {"reason": "invalid_credentials"})
        logger.warning("Login failed", extra={"email": request.email})
        raise

    if not result["requires_code"]:
        return LoginResponse(
            message="Login successful",
            requires_code=False,
            access_token=result["access_token"],
            refresh_token=result["refresh_token"],
            token_type="bearer",
        )

    response.set_cookie(
        PENDING_AUTH_COOKIE,
        result["pending_token"],
        max_age=LOGIN_CODE_EXPIRY_MINUTES * 60,
        httponly=True,
        samesite="strict",
    )
    return LoginResponse(message="A login code was sent to your email", requires_code=True)


@router.post("/login/verify", response_model=TokenResponse)
async def verify_login_code(
    request: VerifyLoginCodeRequest,
    response: Response,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    pending_token: Optional[str] = Depends(get_pending_auth_token),
):
    """Exchange the emailed code for tokens; remember_device sets the trusted-device cookie."""
    if pending_token is None:
        auth_failures_counter.add(1, {"reason": "missing_pending_token"})
        raise AuthenticationError("Login session expired, please log in again")

    result = await auth_service.verify_login_code(db, pending_token, request.code, request.remember_device)

    response.delete_cookie(PENDING_AUTH_COOKIE)
    trusted_device = result.get("trusted_device_token")
    if trusted_device:
        response.set_cookie(
            TRUSTED_DEVICE_COOKIE,
            trusted_device,
            max_age=TRUSTED_DEVICE_EXPIRES_DAYS * 24 * 60 * 60,
            httponly=True,
            samesite="lax",
        )
    return TokenResponse(access_token=result["access_token"], refresh_token=result["refresh_token"])


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: RefreshTokenRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    return TokenResponse(**auth_service.refresh(db, request.refresh_token))


@router.get("/verify-order", response_model=OrderVerificationResponse)
async def verify_order(
    response: Response,
    token: str = Query(..., description="Verification token from the order email"),
    remember: bool = Query(False, description="Skip verification for future payments"),
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service),
):
    """
    Confirm payment for a pending order from the emailed link.

    With remember=true a trusted-payment cookie is set, so later orders
    settle immediately.
    """
    result = await order_service.verify_order_token(db, token, remember)

    trusted_token = result.get("trusted_payment_token")
    if trusted_token:
        response.set_cookie(
            TRUSTED_PAYMENT_COOKIE,
            trusted_token,
            max_age=TRUSTED_PAYMENT_EXPIRES_DAYS * 24 * 60 * 60,
            httponly=True,
            samesite="lax",
        )

    return OrderVerificationResponse(
        message=result["message"],
        order=OrderResponse.from_order(result["order"]),
        already_completed=result["already_completed"],
    )
