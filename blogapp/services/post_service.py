"""
Post service — post lifecycle and its attachments.

Design notes
------------
- Creating a post and storing its files is one unit: the post row is
  flushed to get an id, then ``attachment_service.create_attachments``
  runs inside the same transaction.  A storage failure raises and the
  caller's rollback discards the post as well.
- Deleting a post is a soft delete that cascades to its comments, the
  reactions on the post and on those comments, and its attachments.
  Nothing is removed from the blob store here; the retention purge does
  that once the rows are old enough.
- Detail reads go through the cache-aside layer.  Every write drops the
  entry with ``cache.invalidate_posts(..., db)``, once right away and
  once more after the request commits.  Listings are not cached.
"""
import re
import time
from datetime import datetime, timezone
from collections.abc import Sequence

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.auth import authorize
from blogapp.cache import cache, post_detail_key
from blogapp.config import settings
from blogapp.enums import EntityType, PostStatus
from blogapp.exceptions import NotFoundError
from blogapp.models import Attachment, Category, Comment, Post, Reaction, User, post_categories, utcnow
from blogapp.schemas import PaginatedResponse, PostCreate, PostUpdate
from blogapp.services import attachment_service
from blogapp.services.comment_service import comment_to_dict, soft_delete_comments
from blogapp.storage import BlobStore, BlobUpload, blob_store

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SPACE_RE = re.compile(r"[\s_]+")
_SLUG_DASH_RE = re.compile(r"-+")


def slugify(text: str) -> str:
    """Return a URL-safe, lowercase slug derived from *text*."""
    text = _SLUG_STRIP_RE.sub("", text.lower().strip())
    text = _SLUG_SPACE_RE.sub("-", text)
    return _SLUG_DASH_RE.sub("-", text).strip("-")


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def post_to_dict(
    post: Post,
    attachments: Sequence[Attachment] = (),
    store: BlobStore = blob_store,
) -> dict:
    return {
        "id": post.id,
        "title": post.title,
        "slug": post.slug,
        "content": post.content,
        "status": post.status.value,
        "likes": post.likes,
        "dislikes": post.dislikes,
        "view_count": post.view_count,
        "author_id": post.author_id,
        "published_at": post.published_at.isoformat() if post.published_at else None,
        "created_at": post.created_at.isoformat() if post.created_at else None,
        "attachments": [attachment_service.attachment_to_dict(a, store) for a in attachments],
    }


async def _get_live_post(db: AsyncSession, post_id: int) -> Post:
    result = await db.execute(
        select(Post).where(Post.id == post_id, Post.deleted_at.is_(None))
    )
    post = result.scalar_one_or_none()
    if post is None:
        raise NotFoundError("Post not found.")
    return post


async def _load_categories(db: AsyncSession, category_ids: Sequence[int]) -> list[Category]:
    if not category_ids:
        return []
    result = await db.execute(
        select(Category).where(Category.id.in_(category_ids), Category.deleted_at.is_(None))
    )
    categories = list(result.scalars().all())
    if len(categories) != len(set(category_ids)):
        raise NotFoundError("Category id is invalid.")
    return categories


async def _unique_slug(db: AsyncSession, title: str) -> str:
    slug = slugify(title)
    existing = await db.execute(select(Post.id).where(Post.slug == slug))
    if existing.first() is not None:
        slug = f"{slug}-{int(time.time())}"
    return slug


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def create_post(
    db: AsyncSession,
    data: PostCreate,
    author: User,
    uploads: Sequence[BlobUpload] = (),
    store: BlobStore = blob_store,
) -> dict:
    """
    Create a draft post with its uploaded files.

    Raises ``NotFoundError`` for unknown category ids and
    ``StorageUnavailableError`` when the files cannot be stored (no blob
    is left behind in that case, and the caller must roll back).
    """
    authorize("posts.create", author)

    categories = await _load_categories(db, data.category_ids)

    post = Post(
        title=data.title,
        slug=await _unique_slug(db, data.title),
        content=data.content,
        author_id=author.id,
        status=PostStatus.DRAFT,
        likes=0,
        dislikes=0,
        view_count=0,
    )
    post.categories.extend(categories)
    db.add(post)
    await db.flush()

    attachments = await attachment_service.create_attachments(
        db, uploads, post.id, EntityType.POST, store
    )
    await db.refresh(post)
    return post_to_dict(post, attachments, store)


async def get_post(db: AsyncSession, post_id: int, store: BlobStore = blob_store) -> dict:
    """
    Return the detail dict for *post_id*: counters, live comments and
    live attachments.  Raises ``NotFoundError`` for missing or deleted posts.
    """
    cache_key = post_detail_key(post_id)
    cached = await cache.get(cache_key)
    if cached:
        return cached

    post = await _get_live_post(db, post_id)

    comments_q = (
        select(Comment)
        .where(Comment.post_id == post_id, Comment.deleted_at.is_(None))
        .order_by(Comment.created_at, Comment.id)
    )
    comments = (await db.execute(comments_q)).scalars().all()
    attachment_map = await attachment_service.get_attachments_by_entity_ids(
        db, [post.id], EntityType.POST
    )

    data = post_to_dict(post, attachment_map.get(post.id, []), store)
    data["comments"] = [comment_to_dict(c) for c in comments]
    await cache.set(cache_key, data, ttl=settings.CACHE_TTL_DETAIL)
    return data


async def get_post_by_slug(db: AsyncSession, slug: str, store: BlobStore = blob_store) -> dict:
    post_id = (
        await db.execute(select(Post.id).where(Post.slug == slug, Post.deleted_at.is_(None)))
    ).scalar_one_or_none()
    if post_id is None:
        raise NotFoundError("Post not found.")
    return await get_post(db, post_id, store)


async def _page_of_posts(
    db: AsyncSession,
    conditions: list,
    order_by: tuple,
    page: int,
    page_size: int,
    store: BlobStore,
) -> PaginatedResponse:
    total: int = (
        await db.execute(select(func.count()).select_from(Post).where(*conditions))
    ).scalar_one()
    posts = (
        await db.execute(
            select(Post)
            .where(*conditions)
            .order_by(*order_by)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()

    # One query for the attachments of the whole page (no N+1).
    attachment_map = await attachment_service.get_attachments_by_entity_ids(
        db, [p.id for p in posts], EntityType.POST
    )
    items = [post_to_dict(p, attachment_map.get(p.id, []), store) for p in posts]
    return PaginatedResponse.of(items, total, page, page_size)


async def list_posts(
    db: AsyncSession,
    page: int = 1,
    page_size: int = 20,
    search: str | None = None,
    category_id: int | None = None,
    store: BlobStore = blob_store,
) -> PaginatedResponse:
    """Published posts, newest first, optionally filtered by title or category."""
    conditions = [Post.deleted_at.is_(None), Post.status == PostStatus.PUBLISHED]
    if search:
        conditions.append(Post.title.ilike(f"%{search}%"))
    if category_id is not None:
        conditions.append(
            Post.id.in_(
                select(post_categories.c.post_id).where(post_categories.c.category_id == category_id)
            )
        )
    return await _page_of_posts(
        db, conditions, (Post.published_at.desc(), Post.id.desc()), page, page_size, store
    )


async def list_my_posts(
    db: AsyncSession,
    user: User,
    page: int = 1,
    page_size: int = 20,
    store: BlobStore = blob_store,
) -> PaginatedResponse:
    """Every live post of *user*, drafts included, newest first."""
    conditions = [Post.deleted_at.is_(None), Post.author_id == user.id]
    return await _page_of_posts(
        db, conditions, (Post.created_at.desc(), Post.id.desc()), page, page_size, store
    )


async def update_post(db: AsyncSession, post_id: int, data: PostUpdate, user: User) -> dict:
    """
    Change the title, content or categories of a post.  A new title gets
    a new slug; ``category_ids`` replaces the whole category set.
    """
    post = await _get_live_post(db, post_id)
    authorize("posts.update", user, owner_id=post.author_id)

    if data.title is not None and data.title != post.title:
        post.title = data.title
        post.slug = await _unique_slug(db, data.title)
    if data.content is not None:
        post.content = data.content
    if data.category_ids is not None:
        categories = await _load_categories(db, data.category_ids)
        await db.execute(delete(post_categories).where(post_categories.c.post_id == post_id))
        if categories:
            await db.execute(
                insert(post_categories),
                [{"post_id": post_id, "category_id": c.id} for c in categories],
            )
    await db.flush()
    await db.refresh(post)

    await cache.invalidate_posts([post_id], db)
    return post_to_dict(post)


async def _set_status(db: AsyncSession, post_id: int, user: User, status: PostStatus) -> dict:
    post = await _get_live_post(db, post_id)
    action = "posts.publish" if status is PostStatus.PUBLISHED else "posts.unpublish"
    authorize(action, user, owner_id=post.author_id)

    post.status = status
    if status is PostStatus.PUBLISHED and post.published_at is None:
        post.published_at = datetime.now(timezone.utc)
    await db.flush()
    await db.refresh(post)

    await cache.invalidate_posts([post_id], db)
    return post_to_dict(post)


async def publish_post(db: AsyncSession, post_id: int, user: User) -> dict:
    return await _set_status(db, post_id, user, PostStatus.PUBLISHED)


async def unpublish_post(db: AsyncSession, post_id: int, user: User) -> dict:
    """Move a post back to draft.  Its reactions and counters are kept."""
    return await _set_status(db, post_id, user, PostStatus.DRAFT)


async def delete_post(db: AsyncSession, post_id: int, user: User) -> None:
    """
    Soft-delete a post together with its comments, reactions and
    attachments.  Raises ``NotFoundError`` / ``ForbiddenError``.
    """
    post = await _get_live_post(db, post_id)
    authorize("posts.delete", user, owner_id=post.author_id)

    now = utcnow()
    post.soft_delete(now)

    await db.execute(
        update(Reaction)
        .where(Reaction.post_id == post_id, Reaction.deleted_at.is_(None))
        .values(deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    await soft_delete_comments(db, Comment.post_id == post_id, now)
    await attachment_service.soft_delete_attachments(db, [post_id], EntityType.POST)
    await db.flush()

    await cache.invalidate_posts([post_id], db)


async def delete_posts_by_author(db: AsyncSession, author_id: int, when: datetime) -> list[int]:
    """Soft-delete every live post of *author_id* with its dependents; returns the post ids."""
    post_ids = list(
        (
            await db.execute(
                select(Post.id).where(Post.author_id == author_id, Post.deleted_at.is_(None))
            )
        ).scalars().all()
    )
    if not post_ids:
        return []

    await db.execute(
        update(Reaction)
        .where(
            Reaction.post_id.in_(post_ids),
            Reaction.deleted_at.is_(None),
        )
        .values(deleted_at=when)
        .execution_options(synchronize_session=False)
    )
    await soft_delete_comments(db, Comment.post_id.in_(post_ids), when)
    await db.execute(
        update(Post)
        .where(Post.id.in_(post_ids))
        .values(deleted_at=when)
        .execution_options(synchronize_session=False)
    )
    await attachment_service.soft_delete_attachments(db, post_ids, EntityType.POST)
    return post_ids
