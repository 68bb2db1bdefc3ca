from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.database import get_db
from blogapp.dependencies import PaginationParams, get_current_user
from blogapp.models import User
from blogapp.schemas import CategoryCreate, CategoryResponse, CategoryUpdate, PaginatedResponse
from blogapp.services import category_service

router = APIRouter(prefix="/api/v1/categories", tags=["categories"])


@router.post("", status_code=201, response_model=CategoryResponse)
async def create_category(
    data: CategoryCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await category_service.create_category(db, data, current_user)


@router.get("", response_model=PaginatedResponse)
async def list_categories(
    pagination: PaginationParams = Depends(),
    search: str | None = Query(None, description="Match name or description"),
    db: AsyncSession = Depends(get_db),
):
    return await category_service.list_categories(
        db, pagination.page, pagination.page_size, search
    )


@router.get("/{category_id}", response_model=CategoryResponse)
async def get_category(category_id: int, db: AsyncSession = Depends(get_db)):
    return await category_service.get_category(db, category_id)


@router.patch("/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: int,
    data: CategoryUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await category_service.update_category(db, category_id, data, current_user)


@router.delete("/{category_id}", status_code=204)
async def delete_category(
    category_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    await category_service.delete_category(db, category_id, current_user)
