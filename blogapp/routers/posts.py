from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.config import settings
from blogapp.database import get_db
from blogapp.dependencies import PaginationParams, get_current_user
from blogapp.models import User
from blogapp.schemas import PaginatedResponse, PostCreate, PostDetail, PostResponse, PostUpdate
from blogapp.services import post_service
from blogapp.storage import BlobStore, BlobUpload, get_blob_store

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])


@router.post("", status_code=201, response_model=PostResponse)
async def create_post(
    title: str = Form(...),
    content: str = Form(...),
    category_ids: list[int] = Form(default=[]),
    files: list[UploadFile] | None = File(default=None),
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
):
    files = files or []
    if len(files) > settings.MAX_UPLOAD_FILES:
        raise HTTPException(
            status_code=400,
            detail=f"At most {settings.MAX_UPLOAD_FILES} files can be uploaded at once.",
        )
    try:
        data = PostCreate(title=title, content=content, category_ids=category_ids)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))

    uploads = [
        BlobUpload(data=await f.read(), content_type=f.content_type, filename=f.filename)
        for f in files
    ]
    return await post_service.create_post(db, data, current_user, uploads, store)


@router.get("", response_model=PaginatedResponse)
async def list_posts(
    pagination: PaginationParams = Depends(),
    search: str | None = Query(None, description="Match the post title"),
    category_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    return await post_service.list_posts(
        db, pagination.page, pagination.page_size, search, category_id, store
    )


# Literal paths are declared before "/{post_id}" so they are not parsed as ids.
@router.get("/my", response_model=PaginatedResponse)
async def my_posts(
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
):
    return await post_service.list_my_posts(
        db, current_user, pagination.page, pagination.page_size, store
    )


@router.get("/slug/{slug}", response_model=PostDetail)
async def get_post_by_slug(
    slug: str,
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    return await post_service.get_post_by_slug(db, slug, store)


@router.get("/{post_id}", response_model=PostDetail)
async def get_post(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    return await post_service.get_post(db, post_id, store)


@router.patch("/{post_id}", response_model=PostResponse)
async def update_post(
    post_id: int,
    data: PostUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await post_service.update_post(db, post_id, data, current_user)


@router.post("/{post_id}/publish", response_model=PostResponse)
async def publish_post(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await post_service.publish_post(db, post_id, current_user)


@router.post("/{post_id}/unpublish", response_model=PostResponse)
async def unpublish_post(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await post_service.unpublish_post(db, post_id, current_user)


@router.delete("/{post_id}", status_code=204)
async def delete_post(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    await post_service.delete_post(db, post_id, current_user)
