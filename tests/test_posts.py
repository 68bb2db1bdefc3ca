"""
Post endpoint tests — multipart creation with files (all-or-nothing),
publishing, detail reads with attachments, listings, edits and the
cascading soft delete.
"""
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.cache import post_detail_key
from blogapp.enums import PostStatus, UserRole
from blogapp.models import Attachment, Category, Comment, Post, Reaction, post_categories
from blogapp.services import reaction_service
from tests.conftest import FakeBlobStore, FakeRedis, make_comment, make_post, make_user


def _files(*names: str) -> list[tuple]:
    return [("files", (name, b"\x89PNG-" + name.encode(), "image/png")) for name in names]


async def _live_count(db: AsyncSession, model) -> int:
    q = select(func.count()).select_from(model).where(model.deleted_at.is_(None))
    return (await db.execute(q)).scalar_one()


async def _create_post(client: AsyncClient, user_id: int, files=None, **form):
    data = {"title": "My First Post", "content": "Hello there"}
    data.update(form)
    return await client.post(
        "/api/v1/posts",
        data=data,
        files=files,
        headers={"X-User-Id": str(user_id)},
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_post_with_files(async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore):
    author = await make_user(db_session, "author")

    resp = await _create_post(async_client, author.id, files=_files("a.png", "b.png"))

    assert resp.status_code == 201
    post = resp.json()
    assert post["slug"] == "my-first-post"
    assert post["status"] == "draft"
    assert (post["likes"], post["dislikes"]) == (0, 0)
    assert len(post["attachments"]) == 2
    assert {a["path"] for a in post["attachments"]} == set(blob_store.uploaded)
    assert all(a["url"].startswith("https://cdn.test/") for a in post["attachments"])


@pytest.mark.asyncio
async def test_create_post_without_files(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    resp = await _create_post(async_client, author.id)
    assert resp.status_code == 201
    assert resp.json()["attachments"] == []


@pytest.mark.asyncio
async def test_failed_upload_creates_nothing(async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore):
    """One rejected file: 503, no post row, no attachment rows, no blobs left."""
    author = await make_user(db_session, "author")
    blob_store.fail_uploads = {"broken.png"}

    resp = await _create_post(async_client, author.id, files=_files("a.png", "broken.png", "c.png"))

    assert resp.status_code == 503
    assert resp.json() == {"detail": "We encountered an issue saving your files. Please try again."}
    assert sorted(blob_store.deleted) == sorted(blob_store.uploaded)
    assert blob_store.objects == {}
    assert (await db_session.execute(select(func.count()).select_from(Post))).scalar_one() == 0
    assert (await db_session.execute(select(func.count()).select_from(Attachment))).scalar_one() == 0


@pytest.mark.asyncio
async def test_failed_commit_removes_uploaded_blobs(
    commit_fails_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore
):
    """The request dies at COMMIT: post and attachment rows roll back and the blobs go too."""
    author = await make_user(db_session, "author")

    await _create_post(commit_fails_client, author.id, files=_files("a.png", "b.png"))

    assert len(blob_store.uploaded) == 2
    assert sorted(blob_store.deleted) == sorted(blob_store.uploaded)
    assert blob_store.objects == {}
    assert (await db_session.execute(select(func.count()).select_from(Post))).scalar_one() == 0
    assert (await db_session.execute(select(func.count()).select_from(Attachment))).scalar_one() == 0


@pytest.mark.asyncio
async def test_too_many_files_rejected(async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore):
    author = await make_user(db_session, "author")
    names = [f"f{i}.png" for i in range(11)]
    resp = await _create_post(async_client, author.id, files=_files(*names))
    assert resp.status_code == 400
    assert blob_store.uploaded == []


@pytest.mark.asyncio
async def test_unknown_category_rejected(async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore):
    author = await make_user(db_session, "author")
    db_session.add(Category(name="Python", slug="python"))
    await db_session.commit()

    resp = await _create_post(async_client, author.id, category_ids=["999"])
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Category id is invalid."


@pytest.mark.asyncio
async def test_reader_cannot_create_post(async_client: AsyncClient, db_session: AsyncSession):
    reader = await make_user(db_session, "reader", UserRole.READER)
    resp = await _create_post(async_client, reader.id)
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Publish / read
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_publish_then_read(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    created = (await _create_post(async_client, author.id, files=_files("cover.png"))).json()

    resp = await async_client.post(
        f"/api/v1/posts/{created['id']}/publish", headers={"X-User-Id": str(author.id)}
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "published"
    assert resp.json()["published_at"] is not None

    detail = await async_client.get(f"/api/v1/posts/{created['id']}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["comments"] == []
    assert [a["original_name"] for a in body["attachments"]] == ["cover.png"]


@pytest.mark.asyncio
async def test_other_author_cannot_publish(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    other = await make_user(db_session, "other")
    created = (await _create_post(async_client, author.id)).json()

    resp = await async_client.post(
        f"/api/v1/posts/{created['id']}/publish", headers={"X-User-Id": str(other.id)}
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_get_missing_post(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/posts/4040")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Post not found."}


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_post_soft_deletes_dependents(
    async_client: AsyncClient, db_session: AsyncSession, blob_store: FakeBlobStore
):
    author = await make_user(db_session, "author")
    reader = await make_user(db_session, "reader", UserRole.READER)
    created = (await _create_post(async_client, author.id, files=_files("a.png"))).json()
    await async_client.post(f"/api/v1/posts/{created['id']}/publish", headers={"X-User-Id": str(author.id)})

    post = await db_session.get(Post, created["id"])
    comment = await make_comment(db_session, post, reader)
    reply = await make_comment(db_session, post, author, parent=comment)
    await reaction_service.like_post(db_session, post.id, reader.id)
    await reaction_service.like_comment(db_session, reply.id, reader.id)

    resp = await async_client.delete(f"/api/v1/posts/{post.id}", headers={"X-User-Id": str(author.id)})
    assert resp.status_code == 204

    assert (await async_client.get(f"/api/v1/posts/{post.id}")).status_code == 404

    for model in (Post, Comment, Reaction, Attachment):
        assert await _live_count(db_session, model) == 0, model.__tablename__
    # Rows and blobs stay until the retention purge.
    assert (await db_session.execute(select(func.count()).select_from(Attachment))).scalar_one() == 1
    assert blob_store.deleted == []


@pytest.mark.asyncio
async def test_editor_can_delete_any_post(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    editor = await make_user(db_session, "editor", UserRole.EDITOR)
    post = await make_post(db_session, author)

    resp = await async_client.delete(f"/api/v1/posts/{post.id}", headers={"X-User-Id": str(editor.id)})
    assert resp.status_code == 204


@pytest.mark.asyncio
async def test_deleted_post_rejects_reactions(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    post = await make_post(db_session, author)
    await async_client.delete(f"/api/v1/posts/{post.id}", headers={"X-User-Id": str(author.id)})

    resp = await async_client.post(
        f"/api/v1/reactions/posts/{post.id}/like", headers={"X-User-Id": str(author.id)}
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_deleted_post_is_not_served_from_cache(
    async_client: AsyncClient, db_session: AsyncSession, fake_redis: FakeRedis
):
    author = await make_user(db_session, "author")
    post = await make_post(db_session, author)

    assert (await async_client.get(f"/api/v1/posts/{post.id}")).status_code == 200
    assert post_detail_key(post.id) in fake_redis.store

    await async_client.delete(f"/api/v1/posts/{post.id}", headers={"X-User-Id": str(author.id)})

    assert post_detail_key(post.id) not in fake_redis.store
    assert (await async_client.get(f"/api/v1/posts/{post.id}")).status_code == 404


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_published_posts(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    first = await make_post(db_session, author, "Async Python")
    second = await make_post(db_session, author, "Rust Notes")
    await make_post(db_session, author, "Still a Draft", status=PostStatus.DRAFT)
    gone = await make_post(db_session, author, "Gone")
    gone.soft_delete()
    await db_session.commit()

    resp = await async_client.get("/api/v1/posts")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert {p["id"] for p in body["items"]} == {first.id, second.id}

    resp = await async_client.get("/api/v1/posts", params={"search": "python"})
    assert [p["id"] for p in resp.json()["items"]] == [first.id]

    resp = await async_client.get("/api/v1/posts", params={"page": 2, "page_size": 1})
    body = resp.json()
    assert (body["page"], body["pages"], len(body["items"])) == (2, 2, 1)


@pytest.mark.asyncio
async def test_list_posts_by_category(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    category = Category(name="Python", slug="python")
    db_session.add(category)
    await db_session.commit()

    filed = (await _create_post(async_client, author.id, category_ids=[str(category.id)])).json()
    await async_client.post(f"/api/v1/posts/{filed['id']}/publish", headers={"X-User-Id": str(author.id)})
    await make_post(db_session, author, "Unfiled")

    resp = await async_client.get("/api/v1/posts", params={"category_id": category.id})
    assert [p["id"] for p in resp.json()["items"]] == [filed["id"]]


@pytest.mark.asyncio
async def test_my_posts_include_drafts(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    other = await make_user(db_session, "other")
    draft = await make_post(db_session, author, "Draft", status=PostStatus.DRAFT)
    published = await make_post(db_session, author, "Published")
    await make_post(db_session, other, "Not Mine")

    resp = await async_client.get("/api/v1/posts/my", headers={"X-User-Id": str(author.id)})
    assert resp.status_code == 200
    assert {p["id"] for p in resp.json()["items"]} == {draft.id, published.id}

    assert (await async_client.get("/api/v1/posts/my")).status_code == 401


@pytest.mark.asyncio
async def test_get_post_by_slug(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    post = await make_post(db_session, author)

    resp = await async_client.get(f"/api/v1/posts/slug/{post.slug}")
    assert resp.status_code == 200
    assert resp.json()["id"] == post.id

    resp = await async_client.get("/api/v1/posts/slug/no-such-post")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Update / unpublish
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_post(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    old, new = Category(name="Old", slug="old"), Category(name="New", slug="new")
    db_session.add_all([old, new])
    await db_session.commit()
    created = (await _create_post(async_client, author.id, category_ids=[str(old.id)])).json()

    resp = await async_client.patch(
        f"/api/v1/posts/{created['id']}",
        json={"title": "Renamed Post", "category_ids": [new.id]},
        headers={"X-User-Id": str(author.id)},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["title"] == "Renamed Post"
    assert body["slug"] == "renamed-post"
    assert body["content"] == "Hello there"

    linked = (
        await db_session.execute(
            select(post_categories.c.category_id).where(post_categories.c.post_id == created["id"])
        )
    ).scalars().all()
    assert linked == [new.id]


@pytest.mark.asyncio
async def test_update_post_by_other_author_forbidden(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    other = await make_user(db_session, "other")
    post = await make_post(db_session, author)

    resp = await async_client.patch(
        f"/api/v1/posts/{post.id}", json={"content": "Hijacked"}, headers={"X-User-Id": str(other.id)}
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_unpublish_returns_post_to_draft(async_client: AsyncClient, db_session: AsyncSession):
    author = await make_user(db_session, "author")
    reader = await make_user(db_session, "reader", UserRole.READER)
    post = await make_post(db_session, author)
    await reaction_service.like_post(db_session, post.id, reader.id)

    resp = await async_client.post(f"/api/v1/posts/{post.id}/unpublish", headers={"X-User-Id": str(author.id)})
    assert resp.status_code == 200
    assert resp.json()["status"] == "draft"
    assert resp.json()["likes"] == 1

    assert (await async_client.get("/api/v1/posts")).json()["total"] == 0
    resp = await async_client.post(
        f"/api/v1/reactions/posts/{post.id}/dislike", headers={"X-User-Id": str(reader.id)}
    )
    assert resp.status_code == 404
