"""
User service — accounts, profile attachments and account deletion.

Account deletion retracts the user's reactions with the reaction
engine's transition table (so counters on other people's content drop
exactly as if the user had clicked again) and soft-deletes everything
the user owns, in one transaction.  The retention purge removes the
rows and blobs later.

New accounts are always readers; ``role_service`` handles promotions.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.auth import authorize
from blogapp.cache import cache
from blogapp.enums import EntityType, UserRole
from blogapp.exceptions import NotFoundError
from blogapp.models import Comment, Role, User, utcnow
from blogapp.schemas import UserCreate
from blogapp.services import attachment_service, post_service, reaction_service
from blogapp.services.comment_service import soft_delete_comments
from blogapp.storage import BlobStore, BlobUpload, blob_store

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "display_name": user.display_name,
        "role": user.role.value,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def get_live_user(db: AsyncSession, user_id: int) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found.")
    return user


async def get_user(db: AsyncSession, user_id: int, store: BlobStore = blob_store) -> dict:
    """Return the user with their live profile attachments."""
    user = await get_live_user(db, user_id)
    attachment_map = await attachment_service.get_attachments_by_entity_ids(
        db, [user.id], EntityType.USER
    )
    data = _user_to_dict(user)
    data["attachments"] = [
        attachment_service.attachment_to_dict(a, store)
        for a in attachment_map.get(user.id, [])
    ]
    return data


async def create_user(db: AsyncSession, data: UserCreate) -> dict:
    """
    Create a new user and return its serialised dict.

    Username and email uniqueness is enforced by the database; the
    ``IntegrityError`` propagates and the router answers 409.
    """
    user = User(
        username=data.username,
        email=data.email,
        display_name=data.display_name,
        role=UserRole.READER,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)
    return _user_to_dict(user)


async def add_user_attachment(
    db: AsyncSession,
    user_id: int,
    upload: BlobUpload,
    actor: User,
    store: BlobStore = blob_store,
) -> dict:
    """Store a profile file (avatar, banner) for *user_id*."""
    user = await get_live_user(db, user_id)
    authorize("users.attachments", actor, owner_id=user.id)

    attachment = await attachment_service.create_attachment(
        db, upload, user.id, EntityType.USER, store
    )
    await db.refresh(attachment)
    return attachment_service.attachment_to_dict(attachment, store)


async def delete_user(db: AsyncSession, user_id: int, actor: User) -> None:
    """
    Soft-delete a user account with its posts, comments, role requests
    and profile attachments.  Raises ``NotFoundError`` / ``ForbiddenError``.

    Everything happens in one transaction, committed here while the
    locks of every target the user reacted to are held: either the
    account is gone with its reactions retracted, or nothing changed.
    """
    user = await get_live_user(db, user_id)
    authorize("users.delete", actor, owner_id=user.id)

    keys = await reaction_service.reacted_targets(db, user_id)
    async with reaction_service.hold_targets(keys):
        try:
            stale = await reaction_service.retract_reactions(db, user_id, keys)

            now = utcnow()
            commented = (
                await db.execute(
                    select(Comment.post_id)
                    .where(Comment.author_id == user_id, Comment.deleted_at.is_(None))
                    .distinct()
                )
            ).scalars().all()
            stale.update(commented)

            post_ids = await post_service.delete_posts_by_author(db, user_id, now)
            stale.update(post_ids)
            await soft_delete_comments(db, Comment.author_id == user_id, now)
            await db.execute(
                update(Role)
                .where(Role.user_id == user_id, Role.deleted_at.is_(None))
                .values(deleted_at=now)
                .execution_options(synchronize_session=False)
            )
            await attachment_service.soft_delete_attachments(db, [user_id], EntityType.USER)
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(deleted_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    await cache.invalidate_posts(stale)
    logger.info(
        "User %s soft-deleted (%d posts, %d reactions retracted)",
        user_id, len(post_ids), len(keys),
    )
