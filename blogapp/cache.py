import json
import logging
from collections.abc import Iterable

import redis.asyncio as redis

from blogapp.config import settings

logger = logging.getLogger(__name__)

# ``session.info`` key collecting post ids to drop after the commit.
STALE_POSTS_KEY = "stale_posts"


def post_detail_key(post_id: int) -> str:
    return f"posts:detail:{post_id}"


class CacheManager:
    """
    Cache-aside store for post reads, backed by Redis.

    Redis is optional.  With no connection (or a failing one) lookups
    miss, writes and invalidations are skipped, and the caller falls back
    to the database; no cache error ever reaches a request.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self._redis = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await self._redis.ping()
            logger.info("Redis connected: %s", settings.REDIS_URL)
        except Exception as exc:  # pragma: no cover
            logger.warning("Redis unreachable, post cache disabled: %s", exc)
            self._redis = None

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def _miss(self) -> None:
        self._misses += 1

    async def get(self, key: str) -> dict | list | None:
        if not self._redis:
            self._miss()
            return None
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.debug("Cache GET failed for %r: %s", key, exc)
            self._miss()
            return None
        if raw is None:
            self._miss()
            return None
        self._hits += 1
        return json.loads(raw)

    async def set(self, key: str, value: dict | list, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except Exception as exc:
            logger.debug("Cache SET failed for %r: %s", key, exc)

    async def delete(self, *keys: str) -> None:
        if not self._redis or not keys:
            return
        try:
            await self._redis.delete(*keys)
        except Exception as exc:
            logger.debug("Cache DELETE failed for %r: %s", keys, exc)

    # ------------------------------------------------------------------
    # Post invalidation
    # ------------------------------------------------------------------

    async def invalidate_posts(self, post_ids: Iterable[int], session=None) -> None:
        """
        Drop the detail entries of *post_ids*.  The detail view embeds
        counters, comments and attachments, so any write touching those
        lands here.

        When *session* is given the ids are also remembered on it and
        dropped a second time once the request transaction commits
        (``invalidate_committed``); a read racing the commit may have
        cached the old rows in between.
        """
        post_ids = set(post_ids)
        if not post_ids:
            return
        await self.delete(*(post_detail_key(post_id) for post_id in sorted(post_ids)))
        if session is not None:
            session.info.setdefault(STALE_POSTS_KEY, set()).update(post_ids)

    async def invalidate_committed(self, session) -> None:
        """Drop the entries remembered on *session*; call after it commits."""
        post_ids = session.info.pop(STALE_POSTS_KEY, set())
        if post_ids:
            await self.invalidate_posts(post_ids)

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


# Module-level singleton shared across all request handlers.
cache = CacheManager()
