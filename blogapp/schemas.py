import math
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from blogapp.enums import RoleRequestAction, RoleStatus, UserRole


# --- User ---

class UserBase(BaseModel):
    username: str = Field(max_length=50)
    email: str = Field(max_length=255)
    display_name: str | None = None


class UserCreate(UserBase):
    """Public sign-up payload.  Every account starts as a reader; roles
    change only through an approved role request."""


class UserResponse(UserBase):
    id: int
    role: UserRole
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# --- Attachment ---

class AttachmentResponse(BaseModel):
    id: int
    path: str
    url: str | None = None
    mime_type: str
    size: int
    original_name: str | None = None
    entity_type: str
    external_id: int
    created_at: datetime | None = None


class UserDetail(UserResponse):
    attachments: list[AttachmentResponse] = []


# --- Comment ---

class CommentCreate(BaseModel):
    content: str = Field(min_length=1)
    parent_id: int | None = None


class CommentUpdate(BaseModel):
    content: str = Field(min_length=1)


class CommentResponse(BaseModel):
    id: int
    content: str
    post_id: int
    author_id: int
    parent_id: int | None = None
    likes: int
    dislikes: int
    created_at: datetime | None = None


# --- Post ---

class PostCreate(BaseModel):
    title: str = Field(max_length=200)
    content: str
    category_ids: list[int] = []


class PostUpdate(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    content: str | None = None
    category_ids: list[int] | None = None


class PostResponse(BaseModel):
    id: int
    title: str
    slug: str
    content: str
    status: str
    likes: int
    dislikes: int
    view_count: int
    author_id: int
    published_at: datetime | None = None
    created_at: datetime | None = None
    attachments: list[AttachmentResponse] = []


class PostDetail(PostResponse):
    comments: list[CommentResponse] = []


# --- Category ---

class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None


class CategoryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None


class CategoryResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None = None
    created_at: datetime | None = None


# --- Role request ---

class RoleRequestCreate(BaseModel):
    requested_role: UserRole


class RoleRequestReview(BaseModel):
    action: RoleRequestAction


class RoleRequestResponse(BaseModel):
    id: int
    user_id: int
    requested_role: UserRole
    status: RoleStatus
    reviewed_by_id: int | None = None
    created_at: datetime | None = None


# --- Reaction ---

class ReactionResponse(BaseModel):
    target_type: str
    target_id: int
    state: str
    likes: int
    dislikes: int


# --- Pagination ---

class PaginatedResponse(BaseModel):
    items: list  # Will be typed in router
    total: int
    page: int
    page_size: int
    pages: int

    @classmethod
    def of(cls, items: list, total: int, page: int, page_size: int) -> "PaginatedResponse":
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            pages=math.ceil(total / page_size) if total > 0 else 0,
        )
