"""
Reaction service — like / dislike toggling with denormalized counters.

Design notes
------------
- Every (user, target) pair is a three-state machine
  (``NONE`` / ``LIKED`` / ``DISLIKED``).  ``_TRANSITIONS`` is the whole
  behaviour: the next state plus the delta for each counter.  Posts and
  comments share it; ``ReactionTarget`` only says which table and which
  reaction column to use.
- One call is one transaction.  The target row is read ``FOR UPDATE``
  and the read-modify-write runs under an in-process lock keyed by
  (kind, target id); the commit happens before the lock is released, so
  no other toggle on the same target can observe a half-applied state.
  Different targets never share a lock.
- Account deletion retracts many reactions in one transaction: it takes
  every affected target lock through ``hold_targets`` and calls
  ``retract_reactions``, which never commits on its own.
- Counters are updated with SQL expressions, never from values read into
  Python, and decrements are clamped at zero in the statement itself.
"""
import asyncio
import logging
import weakref
from collections.abc import Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.cache import cache
from blogapp.enums import PostStatus, ReactionState, TargetKind
from blogapp.exceptions import NotFoundError
from blogapp.models import Comment, Post, Reaction, User
from blogapp.schemas import PaginatedResponse
from blogapp.services.post_service import post_to_dict

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReactionTarget:
    kind: TargetKind
    model: type
    reaction_column: str
    post_column: object
    not_found: str
    filters: tuple = ()


_TARGETS: dict[TargetKind, ReactionTarget] = {
    TargetKind.POST: ReactionTarget(
        kind=TargetKind.POST,
        model=Post,
        reaction_column="post_id",
        post_column=Post.id,
        not_found="Post not found.",
        # Drafts cannot be reacted to.
        filters=(Post.status == PostStatus.PUBLISHED,),
    ),
    TargetKind.COMMENT: ReactionTarget(
        kind=TargetKind.COMMENT,
        model=Comment,
        reaction_column="comment_id",
        post_column=Comment.post_id,
        not_found="Comment not found.",
    ),
}


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

# (current state, is_liked) -> (next state, likes delta, dislikes delta)
_TRANSITIONS: dict[tuple[ReactionState, bool], tuple[ReactionState, int, int]] = {
    (ReactionState.NONE, True): (ReactionState.LIKED, 1, 0),
    (ReactionState.NONE, False): (ReactionState.DISLIKED, 0, 1),
    (ReactionState.LIKED, True): (ReactionState.NONE, -1, 0),
    (ReactionState.DISLIKED, False): (ReactionState.NONE, 0, -1),
    (ReactionState.LIKED, False): (ReactionState.DISLIKED, -1, 1),
    (ReactionState.DISLIKED, True): (ReactionState.LIKED, 1, -1),
}


def state_of(reaction: Reaction | None) -> ReactionState:
    if reaction is None:
        return ReactionState.NONE
    return ReactionState.LIKED if reaction.is_liked else ReactionState.DISLIKED


def transition(current: ReactionState, is_liked: bool) -> tuple[ReactionState, int, int]:
    return _TRANSITIONS[(current, is_liked)]


def _shift(column, delta: int):
    """SQL expression moving *column* by *delta*, never below zero."""
    if delta > 0:
        return column + delta
    return case((column > 0, column - 1), else_=0)


async def _move_counters(db: AsyncSession, model, target_id: int, likes_delta: int, dislikes_delta: int) -> None:
    counters = {}
    if likes_delta:
        counters["likes"] = _shift(model.likes, likes_delta)
    if dislikes_delta:
        counters["dislikes"] = _shift(model.dislikes, dislikes_delta)
    if not counters:
        return
    await db.execute(
        update(model)
        .where(model.id == target_id)
        .values(**counters)
        .execution_options(synchronize_session=False)
    )


@dataclass(frozen=True)
class ReactionResult:
    kind: TargetKind
    target_id: int
    state: ReactionState
    likes: int
    dislikes: int

    def to_dict(self) -> dict:
        return {
            "target_type": self.kind.value,
            "target_id": self.target_id,
            "state": self.state.value,
            "likes": self.likes,
            "dislikes": self.dislikes,
        }


# ---------------------------------------------------------------------------
# Per-target serialization
# ---------------------------------------------------------------------------

class _TargetLocks:
    """asyncio locks keyed by target; unused locks are garbage collected."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def get(self, key: tuple[TargetKind, int]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


_target_locks = _TargetLocks()


@asynccontextmanager
async def hold_targets(keys: Iterable[tuple[TargetKind, int]]):
    """
    Hold the locks of several targets at once.  Locks are always taken
    in (kind, id) order, so two multi-target holders cannot deadlock.
    """
    ordered = sorted(set(keys), key=lambda key: (key[0].value, key[1]))
    async with AsyncExitStack() as stack:
        for key in ordered:
            await stack.enter_async_context(_target_locks.get(key))
        yield


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def apply_reaction(
    db: AsyncSession,
    kind: TargetKind,
    target_id: int,
    user_id: int,
    is_liked: bool,
) -> ReactionResult:
    """
    Apply a like (``is_liked=True``) or dislike to a post or comment and
    commit the result.

    Raises ``NotFoundError`` when the user or the target does not exist
    (or the post is not published).  Any failure rolls the session back.
    """
    target = _TARGETS[kind]
    lock = _target_locks.get((kind, target_id))
    async with lock:
        try:
            result, post_id = await _apply_locked(db, target, target_id, user_id, is_liked)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "User %s %s %s %s -> %s (likes=%d, dislikes=%d)",
        user_id, "liked" if is_liked else "disliked", kind.value, target_id,
        result.state.value, result.likes, result.dislikes,
    )
    await cache.invalidate_posts([post_id])
    return result


async def _apply_locked(
    db: AsyncSession,
    target: ReactionTarget,
    target_id: int,
    user_id: int,
    is_liked: bool,
) -> tuple[ReactionResult, int]:
    user_q = select(User.id).where(User.id == user_id, User.deleted_at.is_(None))
    if (await db.execute(user_q)).scalar_one_or_none() is None:
        raise NotFoundError("User not found.")

    model = target.model
    target_q = (
        select(target.post_column)
        .where(model.id == target_id, model.deleted_at.is_(None), *target.filters)
        .with_for_update()
    )
    post_id = (await db.execute(target_q)).scalar_one_or_none()
    if post_id is None:
        raise NotFoundError(target.not_found)

    reaction_fk = getattr(Reaction, target.reaction_column)
    reaction_q = select(Reaction).where(
        reaction_fk == target_id,
        Reaction.user_id == user_id,
        Reaction.deleted_at.is_(None),
    )
    reaction = (await db.execute(reaction_q)).scalar_one_or_none()

    new_state, likes_delta, dislikes_delta = transition(state_of(reaction), is_liked)

    if new_state is ReactionState.NONE:
        await db.delete(reaction)
    elif reaction is None:
        db.add(Reaction(is_liked=is_liked, user_id=user_id, **{target.reaction_column: target_id}))
    else:
        reaction.is_liked = is_liked

    await _move_counters(db, model, target_id, likes_delta, dislikes_delta)
    await db.flush()

    likes, dislikes = (
        await db.execute(select(model.likes, model.dislikes).where(model.id == target_id))
    ).one()
    return ReactionResult(target.kind, target_id, new_state, likes, dislikes), post_id


async def reacted_targets(db: AsyncSession, user_id: int) -> list[tuple[TargetKind, int]]:
    """Lock keys of every target *user_id* currently has a live reaction on."""
    rows = (
        await db.execute(
            select(Reaction.post_id, Reaction.comment_id)
            .where(Reaction.user_id == user_id, Reaction.deleted_at.is_(None))
            .order_by(Reaction.id)
        )
    ).all()
    return [
        (TargetKind.POST, post_id) if post_id is not None else (TargetKind.COMMENT, comment_id)
        for post_id, comment_id in rows
    ]


async def retract_reactions(
    db: AsyncSession,
    user_id: int,
    keys: Iterable[tuple[TargetKind, int]],
) -> set[int]:
    """
    Remove the live reactions of *user_id* on *keys* and move the target
    counters back, without committing.

    The caller holds the locks of *keys* (``hold_targets``) and commits
    before releasing them, so the retraction joins the caller's
    transaction.  Targets are not required to be published.  Returns the
    ids of the posts whose detail view changed.
    """
    touched: set[int] = set()
    for kind, target_id in keys:
        target = _TARGETS[kind]
        model = target.model
        post_id = (
            await db.execute(
                select(target.post_column).where(model.id == target_id).with_for_update()
            )
        ).scalar_one_or_none()

        reaction_fk = getattr(Reaction, target.reaction_column)
        reaction = (
            await db.execute(
                select(Reaction).where(
                    reaction_fk == target_id,
                    Reaction.user_id == user_id,
                    Reaction.deleted_at.is_(None),
                )
            )
        ).scalar_one_or_none()
        if reaction is None:
            continue

        # Repeating the current polarity is the engine's undo.
        _, likes_delta, dislikes_delta = transition(state_of(reaction), reaction.is_liked)
        await db.delete(reaction)
        await _move_counters(db, model, target_id, likes_delta, dislikes_delta)
        if post_id is not None:
            touched.add(post_id)

    await db.flush()
    return touched


async def like_post(db: AsyncSession, post_id: int, user_id: int) -> ReactionResult:
    return await apply_reaction(db, TargetKind.POST, post_id, user_id, True)


async def dislike_post(db: AsyncSession, post_id: int, user_id: int) -> ReactionResult:
    return await apply_reaction(db, TargetKind.POST, post_id, user_id, False)


async def like_comment(db: AsyncSession, comment_id: int, user_id: int) -> ReactionResult:
    return await apply_reaction(db, TargetKind.COMMENT, comment_id, user_id, True)


async def dislike_comment(db: AsyncSession, comment_id: int, user_id: int) -> ReactionResult:
    return await apply_reaction(db, TargetKind.COMMENT, comment_id, user_id, False)


async def get_reacted_posts(
    db: AsyncSession,
    user_id: int,
    is_liked: bool,
    page: int = 1,
    page_size: int = 20,
) -> PaginatedResponse:
    """Paginated posts the user currently likes (or dislikes), newest reaction first."""
    conditions = (
        Reaction.user_id == user_id,
        Reaction.is_liked.is_(is_liked),
        Reaction.deleted_at.is_(None),
        Post.deleted_at.is_(None),
    )

    count_q = (
        select(func.count())
        .select_from(Reaction)
        .join(Post, Reaction.post_id == Post.id)
        .where(*conditions)
    )
    total: int = (await db.execute(count_q)).scalar_one()

    posts_q = (
        select(Post)
        .join(Reaction, Reaction.post_id == Post.id)
        .where(*conditions)
        .order_by(Reaction.created_at.desc(), Reaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    posts = (await db.execute(posts_q)).scalars().all()

    return PaginatedResponse.of([post_to_dict(p) for p in posts], total, page, page_size)
