from contextlib import asynccontextmanager

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase, Session

from blogapp.cache import cache
from blogapp.config import settings
from blogapp.middleware import QUERY_STATS_KEY, install_query_counter
from blogapp.storage import PENDING_BLOBS_KEY, discard_pending_blobs

# Module-level engine variable allows tests to override with a test engine.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

# Register the per-request SQL query counter on the production engine.
install_query_counter(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


@event.listens_for(Session, "after_commit")
def _forget_pending_blobs(session: Session) -> None:
    # Committed attachment rows own their blobs from here on.
    session.info.pop(PENDING_BLOBS_KEY, None)


@asynccontextmanager
async def request_session(session_factory: async_sessionmaker, request: Request):
    """
    One session and one transaction per request.

    On success the transaction is committed and the post cache entries
    the request touched are dropped.  On any error it is rolled back and
    the blobs uploaded for the discarded attachment rows are deleted.
    """
    async with session_factory() as session:
        stats = getattr(request.state, QUERY_STATS_KEY, None)
        if stats is not None:
            session.info[QUERY_STATS_KEY] = stats
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            await discard_pending_blobs(session)
            raise
        await cache.invalidate_committed(session)


async def get_db(request: Request):
    async with request_session(async_session, request) as session:
        yield session
