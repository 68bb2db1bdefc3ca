"""
Comment service — threaded comments on published posts.

Deleting a comment is a soft delete that also hides its replies and the
reactions on all of them; the retention purge removes the rows later.
"""
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.auth import authorize
from blogapp.cache import cache
from blogapp.enums import PostStatus
from blogapp.exceptions import NotFoundError
from blogapp.models import Comment, Post, Reaction, User, utcnow
from blogapp.schemas import CommentCreate, CommentUpdate, PaginatedResponse


def comment_to_dict(comment: Comment) -> dict:
    return {
        "id": comment.id,
        "content": comment.content,
        "post_id": comment.post_id,
        "author_id": comment.author_id,
        "parent_id": comment.parent_id,
        "likes": comment.likes,
        "dislikes": comment.dislikes,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
    }


async def soft_delete_comments(db: AsyncSession, condition, when: datetime) -> list[int]:
    """
    Soft-delete the live comments matching *condition*, every live reply
    below them, and the live reactions on all of those comments.
    Returns the ids of the comments marked.
    """
    frontier = list(
        (
            await db.execute(
                select(Comment.id).where(condition, Comment.deleted_at.is_(None))
            )
        ).scalars().all()
    )
    marked: list[int] = []
    # Walk the reply tree level by level; depth is small in practice.
    while frontier:
        marked.extend(frontier)
        frontier = list(
            (
                await db.execute(
                    select(Comment.id).where(
                        Comment.parent_id.in_(frontier),
                        Comment.deleted_at.is_(None),
                        Comment.id.not_in(marked),
                    )
                )
            ).scalars().all()
        )

    if not marked:
        return []

    await db.execute(
        update(Reaction)
        .where(Reaction.comment_id.in_(marked), Reaction.deleted_at.is_(None))
        .values(deleted_at=when)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(Comment)
        .where(Comment.id.in_(marked))
        .values(deleted_at=when)
        .execution_options(synchronize_session=False)
    )
    return marked


async def add_comment(
    db: AsyncSession,
    post_id: int,
    data: CommentCreate,
    author: User,
) -> dict:
    """
    Add a comment (or a reply when ``data.parent_id`` is set) to a
    published post.  Raises ``NotFoundError`` for a missing post or parent.
    """
    post_q = select(Post.id).where(
        Post.id == post_id,
        Post.deleted_at.is_(None),
        Post.status == PostStatus.PUBLISHED,
    )
    if (await db.execute(post_q)).scalar_one_or_none() is None:
        raise NotFoundError("Post not found.")

    if data.parent_id is not None:
        parent_q = select(Comment.id).where(
            Comment.id == data.parent_id,
            Comment.post_id == post_id,
            Comment.deleted_at.is_(None),
        )
        if (await db.execute(parent_q)).scalar_one_or_none() is None:
            raise NotFoundError("Comment not found.")

    comment = Comment(
        content=data.content,
        post_id=post_id,
        author_id=author.id,
        parent_id=data.parent_id,
        likes=0,
        dislikes=0,
    )
    db.add(comment)
    await db.flush()
    await db.refresh(comment)

    await cache.invalidate_posts([post_id], db)
    return comment_to_dict(comment)


async def delete_comment(db: AsyncSession, comment_id: int, user: User) -> None:
    comment = await _get_live_comment(db, comment_id)
    authorize("comments.delete", user, owner_id=comment.author_id)

    await soft_delete_comments(db, Comment.id == comment_id, utcnow())
    await db.flush()
    await cache.invalidate_posts([comment.post_id], db)


async def _get_live_comment(db: AsyncSession, comment_id: int) -> Comment:
    result = await db.execute(
        select(Comment).where(Comment.id == comment_id, Comment.deleted_at.is_(None))
    )
    comment = result.scalar_one_or_none()
    if comment is None:
        raise NotFoundError("Comment not found.")
    return comment


async def get_comment(db: AsyncSession, comment_id: int) -> dict:
    return comment_to_dict(await _get_live_comment(db, comment_id))


async def list_comments(
    db: AsyncSession,
    post_id: int,
    page: int = 1,
    page_size: int = 20,
) -> PaginatedResponse:
    """Live comments and replies of a live post, oldest first."""
    post_q = select(Post.id).where(Post.id == post_id, Post.deleted_at.is_(None))
    if (await db.execute(post_q)).scalar_one_or_none() is None:
        raise NotFoundError("Post not found.")

    conditions = (Comment.post_id == post_id, Comment.deleted_at.is_(None))
    total: int = (
        await db.execute(select(func.count()).select_from(Comment).where(*conditions))
    ).scalar_one()
    comments = (
        await db.execute(
            select(Comment)
            .where(*conditions)
            .order_by(Comment.created_at, Comment.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()
    return PaginatedResponse.of([comment_to_dict(c) for c in comments], total, page, page_size)


async def update_comment(
    db: AsyncSession,
    comment_id: int,
    data: CommentUpdate,
    user: User,
) -> dict:
    comment = await _get_live_comment(db, comment_id)
    authorize("comments.update", user, owner_id=comment.author_id)

    comment.content = data.content
    await db.flush()
    await db.refresh(comment)

    await cache.invalidate_posts([comment.post_id], db)
    return comment_to_dict(comment)
