from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from blogapp.database import Base
from blogapp.enums import (
    CommentStatus,
    EntityType,
    PostStatus,
    RoleStatus,
    UserRole,
)


def _enum(enum_cls, name: str) -> Enum:
    """Persist enum *values* (``"post"``) rather than member names (``"POST"``)."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


_user_role_enum = _enum(UserRole, "user_role")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Shared columns
# ---------------------------------------------------------------------------
class SoftDeleteMixin:
    """
    Timestamps shared by every table.

    A non-null ``deleted_at`` marks the row as soft-deleted: it is hidden
    from normal queries and kept until the retention purge removes it.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self, when: datetime | None = None) -> None:
        self.deleted_at = when or utcnow()


# ---------------------------------------------------------------------------
# Association table: Post <-> Category (many-to-many)
# ---------------------------------------------------------------------------
post_categories = Table(
    "post_categories",
    Base.metadata,
    Column("post_id", Integer, ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
class User(SoftDeleteMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _user_role_enum, default=UserRole.READER, nullable=False
    )

    # Relationships: lazy="noload" enforces explicit eager loading in services
    posts: Mapped[List["Post"]] = relationship(
        "Post", back_populates="author", lazy="noload"
    )


# ---------------------------------------------------------------------------
# Role (role-change request)
# ---------------------------------------------------------------------------
class Role(SoftDeleteMixin, Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requested_role: Mapped[UserRole] = mapped_column(_user_role_enum, nullable=False)
    status: Mapped[RoleStatus] = mapped_column(
        _enum(RoleStatus, "role_status"), default=RoleStatus.PENDING, nullable=False
    )

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reviewed_by_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )


# ---------------------------------------------------------------------------
# Category
# ---------------------------------------------------------------------------
class Category(SoftDeleteMixin, Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    posts: Mapped[List["Post"]] = relationship(
        "Post", secondary=post_categories, back_populates="categories", lazy="noload"
    )


# ---------------------------------------------------------------------------
# Post
# ---------------------------------------------------------------------------
class Post(SoftDeleteMixin, Base):
    __tablename__ = "posts"

    __table_args__ = (
        # Author's posts sorted by date (profile page, author feed)
        Index("ix_posts_author_id_created_at", "author_id", "created_at"),
        # Published feed
        Index("ix_posts_status_created_at", "status", "created_at"),
        CheckConstraint("likes >= 0 AND dislikes >= 0", name="ck_posts_counters_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    slug: Mapped[str] = mapped_column(String(350), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[PostStatus] = mapped_column(
        _enum(PostStatus, "post_status"), default=PostStatus.DRAFT, nullable=False
    )
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Denormalized reaction counters; written only by reaction_service.
    likes: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    dislikes: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Relationships: all lazy="noload" to prevent N+1; use selectinload/joinedload in services
    author: Mapped["User"] = relationship("User", back_populates="posts", lazy="noload")
    comments: Mapped[List["Comment"]] = relationship(
        "Comment", back_populates="post", lazy="noload"
    )
    categories: Mapped[List["Category"]] = relationship(
        "Category", secondary=post_categories, back_populates="posts", lazy="noload"
    )


# ---------------------------------------------------------------------------
# Comment
# ---------------------------------------------------------------------------
class Comment(SoftDeleteMixin, Base):
    __tablename__ = "comments"

    __table_args__ = (
        CheckConstraint("likes >= 0 AND dislikes >= 0", name="ck_comments_counters_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CommentStatus] = mapped_column(
        _enum(CommentStatus, "comment_status"), default=CommentStatus.PENDING, nullable=False
    )
    likes: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    dislikes: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("comments.id", ondelete="CASCADE"), nullable=True, index=True
    )

    # Relationships
    post: Mapped["Post"] = relationship("Post", back_populates="comments", lazy="noload")


# ---------------------------------------------------------------------------
# Reaction (like / dislike ledger)
# ---------------------------------------------------------------------------
class Reaction(SoftDeleteMixin, Base):
    __tablename__ = "reactions"

    __table_args__ = (
        # One reaction per (user, target).  NULLs are distinct in unique
        # constraints, so comment reactions do not collide on post_id.
        UniqueConstraint("user_id", "post_id", name="uq_reactions_user_post"),
        UniqueConstraint("user_id", "comment_id", name="uq_reactions_user_comment"),
        CheckConstraint(
            "(post_id IS NULL) <> (comment_id IS NULL)",
            name="ck_reactions_single_target",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    is_liked: Mapped[bool] = mapped_column(Boolean, nullable=False)

    post_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=True, index=True
    )
    comment_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("comments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    post: Mapped[Optional["Post"]] = relationship("Post", lazy="noload")


# ---------------------------------------------------------------------------
# Attachment (metadata for a blob in external storage)
# ---------------------------------------------------------------------------
class Attachment(SoftDeleteMixin, Base):
    __tablename__ = "attachments"

    __table_args__ = (
        Index("ix_attachments_entity_type_external_id", "entity_type", "external_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Polymorphic owner: no FK, the owner table depends on entity_type.
    external_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(_enum(EntityType, "entity_type"), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
