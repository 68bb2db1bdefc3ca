from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.database import get_db
from blogapp.dependencies import PaginationParams, get_current_user
from blogapp.enums import RoleStatus
from blogapp.models import User
from blogapp.schemas import (
    PaginatedResponse,
    RoleRequestCreate,
    RoleRequestResponse,
    RoleRequestReview,
)
from blogapp.services import role_service

router = APIRouter(prefix="/api/v1/roles", tags=["roles"])


@router.post("", status_code=201, response_model=RoleRequestResponse)
async def request_role(
    data: RoleRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await role_service.create_role_request(db, current_user, data.requested_role)


@router.get("/my", response_model=RoleRequestResponse)
async def my_role_request(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await role_service.get_my_role_request(db, current_user)


@router.get("", response_model=PaginatedResponse)
async def list_role_requests(
    pagination: PaginationParams = Depends(),
    status: RoleStatus | None = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await role_service.list_role_requests(
        db, current_user, pagination.page, pagination.page_size, status
    )


@router.patch("/{request_id}", response_model=RoleRequestResponse)
async def review_role_request(
    request_id: int,
    data: RoleRequestReview,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await role_service.review_role_request(db, request_id, data.action, current_user)
