from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.database import get_db
from blogapp.dependencies import PaginationParams, get_current_user
from blogapp.models import User
from blogapp.schemas import CommentCreate, CommentResponse, CommentUpdate, PaginatedResponse
from blogapp.services import comment_service

router = APIRouter(prefix="/api/v1", tags=["comments"])


@router.post("/posts/{post_id}/comments", status_code=201, response_model=CommentResponse)
async def add_comment(
    post_id: int,
    data: CommentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await comment_service.add_comment(db, post_id, data, current_user)


@router.get("/posts/{post_id}/comments", response_model=PaginatedResponse)
async def list_comments(
    post_id: int,
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await comment_service.list_comments(db, post_id, pagination.page, pagination.page_size)


@router.get("/comments/{comment_id}", response_model=CommentResponse)
async def get_comment(comment_id: int, db: AsyncSession = Depends(get_db)):
    return await comment_service.get_comment(db, comment_id)


@router.patch("/comments/{comment_id}", response_model=CommentResponse)
async def update_comment(
    comment_id: int,
    data: CommentUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await comment_service.update_comment(db, comment_id, data, current_user)


@router.delete("/comments/{comment_id}", status_code=204)
async def delete_comment(
    comment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    await comment_service.delete_comment(db, comment_id, current_user)
