"""
Test infrastructure for the Blog API.

Strategy
--------
- SQLite in-memory via aiosqlite, shared through StaticPool so every
  session (request sessions, the purge's per-table sessions, direct
  service calls) sees the same database.
- ``get_db`` is overridden to run the same ``request_session`` scope on
  the test session factory: the request's ``QueryStats`` still reach the
  session (X-Query-Count is exercised for real), and rollback cleanup of
  uploaded blobs and post-commit cache invalidation behave as in
  production.
- ``get_blob_store`` is overridden with ``FakeBlobStore``: an in-memory
  store that records uploads and deletes and can be told to fail.
- Tables are created before each test and dropped after.
- Redis is disabled (``cache._redis = None``); the CacheManager degrades
  to no-ops, so most tests exercise the database path only.  Cache tests
  request ``fake_redis``, which plugs in a dict-backed stand-in.
"""
import asyncio
import uuid

import pytest_asyncio
from fastapi import Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from blogapp.cache import cache
from blogapp.database import Base, get_db, request_session
from blogapp.enums import PostStatus, UserRole
from blogapp.exceptions import StorageUnavailableError
from blogapp.main import app
from blogapp.middleware import install_query_counter
from blogapp.models import Comment, Post, User
from blogapp.storage import BlobUpload, StoredBlob, get_blob_store

# ---------------------------------------------------------------------------
# Test database engine — SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# In-memory blob store
# ---------------------------------------------------------------------------

class FakeBlobStore:
    """
    Drop-in for ``BlobStore``.

    ``fail_uploads`` holds filenames whose upload raises
    ``StorageUnavailableError``; ``fail_deletes`` holds object ids whose
    delete returns False.  ``upload_delay`` makes every upload yield to
    the event loop so batch uploads genuinely overlap.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.uploaded: list[str] = []
        self.deleted: list[str] = []
        self.fail_uploads: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.upload_delay: float = 0.0

    async def upload(self, upload: BlobUpload) -> StoredBlob:
        if self.upload_delay:
            await asyncio.sleep(self.upload_delay)
        if upload.filename in self.fail_uploads:
            raise StorageUnavailableError()
        object_id = f"blogApp/{uuid.uuid4().hex}"
        self.objects[object_id] = upload.data
        self.uploaded.append(object_id)
        return StoredBlob(
            object_id=object_id,
            size=len(upload.data),
            content_type=upload.content_type or "application/octet-stream",
            original_name=upload.filename,
        )

    async def delete(self, object_id: str) -> bool:
        self.deleted.append(object_id)
        if object_id in self.fail_deletes:
            return False
        self.objects.pop(object_id, None)
        return True

    def public_url(self, object_id: str) -> str:
        return f"https://cdn.test/{object_id}"


# ---------------------------------------------------------------------------
# In-memory Redis
# ---------------------------------------------------------------------------

class FakeRedis:
    """The slice of ``redis.asyncio.Redis`` that ``CacheManager`` calls."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.store[key] = value

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.store.pop(key, None) is not None)


# ---------------------------------------------------------------------------
# Dependency overrides
# ---------------------------------------------------------------------------

async def override_get_db(request: Request):
    async with request_session(async_session_test, request) as session:
        yield session


app.dependency_overrides[get_db] = override_get_db


class CommitFailsSession(AsyncSession):
    """A session whose COMMIT never reaches the database."""

    async def commit(self) -> None:
        raise OperationalError("COMMIT", None, ConnectionError("connection lost at COMMIT"))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def blob_store() -> FakeBlobStore:
    store = FakeBlobStore()
    app.dependency_overrides[get_blob_store] = lambda: store
    yield store
    app.dependency_overrides.pop(get_blob_store, None)


@pytest_asyncio.fixture
async def async_client(blob_store: FakeBlobStore) -> AsyncClient:
    cache._redis = None
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def commit_fails_client(blob_store: FakeBlobStore) -> AsyncClient:
    """
    Client whose request transactions fail at COMMIT.  Server errors come
    back as responses instead of being raised into the test.
    """
    sessions = async_sessionmaker(engine_test, class_=CommitFailsSession, expire_on_commit=False)

    async def get_db_commit_fails(request: Request):
        async with request_session(sessions, request) as session:
            yield session

    app.dependency_overrides[get_db] = get_db_commit_fails
    cache._redis = None
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides[get_db] = override_get_db


@pytest_asyncio.fixture
async def fake_redis(async_client: AsyncClient) -> FakeRedis:
    """Turn the post cache on for one test, backed by a dict."""
    redis = FakeRedis()
    cache._redis = redis
    yield redis
    cache._redis = None


# ---------------------------------------------------------------------------
# Seed helpers (committed, so code that commits or opens its own
# sessions sees the rows)
# ---------------------------------------------------------------------------

async def make_user(db: AsyncSession, name: str, role: UserRole = UserRole.AUTHOR) -> User:
    user = User(username=name, email=f"{name}@example.com", display_name=name.title(), role=role)
    db.add(user)
    await db.commit()
    return user


async def make_post(
    db: AsyncSession,
    author: User,
    title: str = "Hello World",
    status: PostStatus = PostStatus.PUBLISHED,
) -> Post:
    post = Post(
        title=title,
        slug=f"{title.lower().replace(' ', '-')}-{uuid.uuid4().hex[:6]}",
        content="Body",
        status=status,
        author_id=author.id,
        likes=0,
        dislikes=0,
        view_count=0,
    )
    db.add(post)
    await db.commit()
    return post


async def make_comment(db: AsyncSession, post: Post, author: User, parent: Comment | None = None) -> Comment:
    comment = Comment(
        content="Nice post",
        post_id=post.id,
        author_id=author.id,
        parent_id=parent.id if parent else None,
        likes=0,
        dislikes=0,
    )
    db.add(comment)
    await db.commit()
    return comment
