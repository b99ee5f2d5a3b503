"""Users API router."""
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from auth import get_current_user, require_admin
from database import get_db
from dependencies import get_user_service
from models import User
from schemas import BalanceTopUpRequest, MessageResponse, UserResponse
from services.user_service import UserService

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_me(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service),
):
    return await user_service.get_user_profile(db, user.id)


@router.post("/me/balance", response_model=UserResponse)
async def add_balance(
    request: BalanceTopUpRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service),
):
    """Top up the current user's balance."""
    return await user_service.add_balance(db, user.id, request.amount)


@router.get("/unsubscribe", response_model=MessageResponse)
async def unsubscribe(
    token: str = Query(..., description="Token from a balance notification email"),
    db: Session = Depends(get_db),
    user_service: UserService = Depends(get_user_service),
):
    await user_service.unsubscribe(db, token)
    return MessageResponse(message="You will no longer receive balance notifications")


@router.delete("/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int = Path(..., description="User ID"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    user_service: UserService = Depends(get_user_service),
):
    """Soft-delete a user; their orders are kept."""
    await user_service.soft_delete(db, user_id)
    return MessageResponse(message="User deleted")
