from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.database import get_db
from blogapp.dependencies import get_current_user
from blogapp.models import User
from blogapp.schemas import AttachmentResponse, UserCreate, UserDetail, UserResponse
from blogapp.services import user_service
from blogapp.storage import BlobStore, BlobUpload, get_blob_store

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("", status_code=201, response_model=UserResponse)
async def create_user(data: UserCreate, db: AsyncSession = Depends(get_db)):
    try:
        return await user_service.create_user(db, data)
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail="A user with this username or email already exists",
        )


@router.get("/{user_id}", response_model=UserDetail)
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    return await user_service.get_user(db, user_id, store)


@router.post("/{user_id}/attachments", status_code=201, response_model=AttachmentResponse)
async def upload_user_attachment(
    user_id: int,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
):
    upload = BlobUpload(data=await file.read(), content_type=file.content_type, filename=file.filename)
    return await user_service.add_user_attachment(db, user_id, upload, current_user, store)


@router.delete("/{user_id}", status_code=204)
async def delete_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    await user_service.delete_user(db, user_id, current_user)
