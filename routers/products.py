"""Products API router."""
from typing import List

from fastapi import APIRouter, Depends, Path, status
from opentelemetry import trace
from sqlalchemy.orm import Session

from auth import require_admin
from database import get_db
from dependencies import get_product_service
from models import User
from schemas import MessageResponse, ProductCreate, ProductResponse, ProductUpdate
from services.product_service import ProductService

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=List[ProductResponse])
async def get_products(
    db: Session = Depends(get_db),
    product_service: ProductService = Depends(get_product_service),
):
    products = await product_service.list_products(db)

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))
    return products


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    product_service: ProductService = Depends(get_product_service),
):
    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)
    return await product_service.get_product(db, product_id)


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    request: ProductCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    product_service: ProductService = Depends(get_product_service),
):
    return await product_service.create_product(db, request)


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    request: ProductUpdate,
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    product_service: ProductService = Depends(get_product_service),
):
    return await product_service.update_product(db, product_id, request)


@router.delete("/{product_id}", response_model=MessageResponse)
async def delete_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    product_service: ProductService = Depends(get_product_service),
):
    """Delete a product; refused while any order references it."""
    await product_service.delete_product(db, product_id)
    return MessageResponse(message="Product deleted")
