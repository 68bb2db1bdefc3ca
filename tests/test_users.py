"""
User endpoint tests — account creation, profile attachments and account
deletion, which retracts the user's reactions and soft-deletes what the
user owns in one transaction.
"""
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.enums import UserRole
from blogapp.models import Attachment, Comment, Post, Reaction, User
from blogapp.services import attachment_service, reaction_service, user_service
from tests.conftest import FakeBlobStore, FakeRedis, make_comment, make_post, make_user


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_user(async_client: AsyncClient):
    resp = await async_client.post("/api/v1/users", json={
        "username": "newuser",
        "email": "newuser@example.com",
        "display_name": "New User",
    })
    assert resp.status_code == 201
    user = resp.json()
    assert user["username"] == "newuser"
    assert user["display_name"] == "New User"
    assert user["role"] == "reader"
    assert "created_at" in user


@pytest.mark.asyncio
async def test_sign_up_cannot_choose_role(async_client: AsyncClient):
    resp = await async_client.post("/api/v1/users", json={
        "username": "sneaky",
        "email": "sneaky@example.com",
        "role": "admin",
    })
    assert resp.status_code == 201
    assert resp.json()["role"] == "reader"


@pytest.mark.asyncio
async def test_create_user_missing_email(async_client: AsyncClient):
    resp = await async_client.post("/api/v1/users", json={"username": "noemail"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_user_not_found(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/users/9999")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "User not found."}


# ---------------------------------------------------------------------------
# Profile attachments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upload_avatar(async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore):
    user = await make_user(db_session, "avatar_owner", UserRole.READER)

    resp = await async_client.post(
        f"/api/v1/users/{user.id}/attachments",
        files={"file": ("me.jpg", b"jpegdata", "image/jpeg")},
        headers={"X-User-Id": str(user.id)},
    )
    assert resp.status_code == 201
    attachment = resp.json()
    assert attachment["entity_type"] == "user"
    assert attachment["external_id"] == user.id
    assert attachment["path"] in blob_store.objects

    detail = await async_client.get(f"/api/v1/users/{user.id}")
    assert [a["original_name"] for a in detail.json()["attachments"]] == ["me.jpg"]


@pytest.mark.asyncio
async def test_avatar_upload_failure_returns_503(
    async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore
):
    user = await make_user(db_session, "unlucky", UserRole.READER)
    blob_store.fail_uploads = {"me.jpg"}

    resp = await async_client.post(
        f"/api/v1/users/{user.id}/attachments",
        files={"file": ("me.jpg", b"jpegdata", "image/jpeg")},
        headers={"X-User-Id": str(user.id)},
    )
    assert resp.status_code == 503
    assert (await db_session.execute(select(func.count()).select_from(Attachment))).scalar_one() == 0


@pytest.mark.asyncio
async def test_avatar_blob_removed_when_commit_fails(
    commit_fails_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore
):
    user = await make_user(db_session, "unlucky", UserRole.READER)

    await commit_fails_client.post(
        f"/api/v1/users/{user.id}/attachments",
        files={"file": ("me.jpg", b"jpegdata", "image/jpeg")},
        headers={"X-User-Id": str(user.id)},
    )

    assert len(blob_store.uploaded) == 1
    assert blob_store.deleted == blob_store.uploaded
    assert blob_store.objects == {}
    assert (await db_session.execute(select(func.count()).select_from(Attachment))).scalar_one() == 0


@pytest.mark.asyncio
async def test_cannot_upload_for_someone_else(async_client: AsyncClient, db_session: AsyncSession):
    owner = await make_user(db_session, "owner", UserRole.READER)
    other = await make_user(db_session, "other", UserRole.AUTHOR)

    resp = await async_client.post(
        f"/api/v1/users/{owner.id}/attachments",
        files={"file": ("x.png", b"png", "image/png")},
        headers={"X-User-Id": str(other.id)},
    )
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_user_retracts_reactions_and_soft_deletes_content(
    async_client: AsyncClient, db_session: AsyncSession
):
    leaving = await make_user(db_session, "leaving")
    other = await make_user(db_session, "other")
    admin = await make_user(db_session, "admin", UserRole.ADMIN)

    own_post = await make_post(db_session, leaving, "Own Post")
    others_post = await make_post(db_session, other, "Other Post")
    others_comment = await make_comment(db_session, others_post, other)
    await make_comment(db_session, others_post, leaving)

    await reaction_service.like_post(db_session, others_post.id, leaving.id)
    await reaction_service.like_post(db_session, others_post.id, admin.id)
    await reaction_service.dislike_comment(db_session, others_comment.id, leaving.id)

    resp = await async_client.delete(f"/api/v1/users/{leaving.id}", headers={"X-User-Id": str(admin.id)})
    assert resp.status_code == 204

    # Counters on other people's content drop as if the user had clicked again.
    await db_session.refresh(others_post)
    await db_session.refresh(others_comment)
    assert (others_post.likes, others_post.dislikes) == (1, 0)
    assert (others_comment.likes, others_comment.dislikes) == (0, 0)
    assert (
        await db_session.execute(
            select(func.count()).select_from(Reaction).where(Reaction.user_id == leaving.id)
        )
    ).scalar_one() == 0

    await db_session.refresh(own_post)
    user = await db_session.get(User, leaving.id)
    await db_session.refresh(user)
    assert own_post.deleted_at is not None
    assert user.deleted_at is not None
    live_comments = select(func.count()).select_from(Comment).where(
        Comment.author_id == leaving.id, Comment.deleted_at.is_(None)
    )
    assert (await db_session.execute(live_comments)).scalar_one() == 0

    assert (await async_client.get(f"/api/v1/users/{leaving.id}")).status_code == 404
    # The other user's post is untouched.
    await db_session.refresh(others_post)
    assert others_post.deleted_at is None
    assert (await db_session.execute(
        select(func.count()).select_from(Post).where(Post.deleted_at.is_(None))
    )).scalar_one() == 1


@pytest.mark.asyncio
async def test_deleted_user_can_no_longer_act(async_client: AsyncClient, db_session: AsyncSession):
    user = await make_user(db_session, "short_lived", UserRole.READER)
    resp = await async_client.delete(f"/api/v1/users/{user.id}", headers={"X-User-Id": str(user.id)})
    assert resp.status_code == 204

    resp = await async_client.delete(f"/api/v1/users/{user.id}", headers={"X-User-Id": str(user.id)})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_only_admin_deletes_other_users(async_client: AsyncClient, db_session: AsyncSession):
    target = await make_user(db_session, "target", UserRole.READER)
    editor = await make_user(db_session, "editor", UserRole.EDITOR)

    resp = await async_client.delete(f"/api/v1/users/{target.id}", headers={"X-User-Id": str(editor.id)})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_failed_account_deletion_changes_nothing(
    db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch
):
    """A step after the reaction retraction fails: counters and reactions stay as they were."""
    leaving = await make_user(db_session, "leaving")
    other = await make_user(db_session, "other")
    admin = await make_user(db_session, "admin", UserRole.ADMIN)
    post = await make_post(db_session, other)
    await reaction_service.like_post(db_session, post.id, leaving.id)

    async def broken(*args, **kwargs):
        raise RuntimeError("attachments table is locked")

    monkeypatch.setattr(attachment_service, "soft_delete_attachments", broken)

    with pytest.raises(RuntimeError):
        await user_service.delete_user(db_session, leaving.id, admin)

    await db_session.refresh(post)
    assert post.likes == 1
    live_reactions = select(func.count()).select_from(Reaction).where(
        Reaction.user_id == leaving.id, Reaction.deleted_at.is_(None)
    )
    assert (await db_session.execute(live_reactions)).scalar_one() == 1
    user = await db_session.get(User, leaving.id)
    await db_session.refresh(user)
    assert user.deleted_at is None


@pytest.mark.asyncio
async def test_account_deletion_drops_cached_posts(
    async_client: AsyncClient, db_session: AsyncSession, fake_redis: FakeRedis
):
    leaving = await make_user(db_session, "leaving")
    other = await make_user(db_session, "other")
    admin = await make_user(db_session, "admin", UserRole.ADMIN)
    own_post = await make_post(db_session, leaving, "Own Post")
    others_post = await make_post(db_session, other, "Other Post")
    await make_comment(db_session, others_post, leaving)

    for post in (own_post, others_post):
        assert (await async_client.get(f"/api/v1/posts/{post.id}")).status_code == 200
    assert len(fake_redis.store) == 2

    resp = await async_client.delete(f"/api/v1/users/{leaving.id}", headers={"X-User-Id": str(admin.id)})
    assert resp.status_code == 204

    assert fake_redis.store == {}
    assert (await async_client.get(f"/api/v1/posts/{own_post.id}")).status_code == 404
    detail = await async_client.get(f"/api/v1/posts/{others_post.id}")
    assert detail.json()["comments"] == []
