from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.database import get_db
from blogapp.dependencies import PaginationParams, get_current_user
from blogapp.enums import TargetKind
from blogapp.models import User
from blogapp.schemas import PaginatedResponse, ReactionResponse
from blogapp.services import reaction_service

router = APIRouter(prefix="/api/v1/reactions", tags=["reactions"])


@router.post("/posts/{post_id}/like", response_model=ReactionResponse)
async def like_post(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = await reaction_service.apply_reaction(db, TargetKind.POST, post_id, current_user.id, True)
    return result.to_dict()


@router.post("/posts/{post_id}/dislike", response_model=ReactionResponse)
async def dislike_post(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = await reaction_service.apply_reaction(db, TargetKind.POST, post_id, current_user.id, False)
    return result.to_dict()


@router.post("/comments/{comment_id}/like", response_model=ReactionResponse)
async def like_comment(
    comment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = await reaction_service.apply_reaction(db, TargetKind.COMMENT, comment_id, current_user.id, True)
    return result.to_dict()


@router.post("/comments/{comment_id}/dislike", response_model=ReactionResponse)
async def dislike_comment(
    comment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = await reaction_service.apply_reaction(db, TargetKind.COMMENT, comment_id, current_user.id, False)
    return result.to_dict()


@router.get("/liked-posts", response_model=PaginatedResponse)
async def liked_posts(
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await reaction_service.get_reacted_posts(
        db, current_user.id, True, pagination.page, pagination.page_size
    )


@router.get("/disliked-posts", response_model=PaginatedResponse)
async def disliked_posts(
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await reaction_service.get_reacted_posts(
        db, current_user.id, False, pagination.page, pagination.page_size
    )
