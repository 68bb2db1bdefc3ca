import time
from dataclasses import dataclass

from sqlalchemy import event
from sqlalchemy.orm import Session
from starlette.types import ASGIApp, Receive, Scope, Send

# ---------------------------------------------------------------------------
# Per-request query statistics
# ---------------------------------------------------------------------------


@dataclass
class QueryStats:
    """SQL statement counter owned by a single request scope."""

    count: int = 0


QUERY_STATS_KEY = "query_stats"


def get_query_stats(scope: Scope) -> QueryStats | None:
    return scope.get("state", {}).get(QUERY_STATS_KEY)


@event.listens_for(Session, "after_begin")
def _bind_stats_to_connection(session, transaction, connection):
    # Every session overwrites the slot, so a pooled connection never
    # carries a previous request's counter into an unrelated session.
    connection.info[QUERY_STATS_KEY] = session.info.get(QUERY_STATS_KEY)


def install_query_counter(engine) -> None:
    """
    Register a ``before_cursor_execute`` event listener on *engine* that
    increments the ``QueryStats`` bound to the executing connection.

    The stats object travels explicitly: ``TimingMiddleware`` puts it on
    the request scope, ``get_db`` copies it into ``session.info`` and the
    ``after_begin`` hook above hands it to the connection.  Sessions
    without stats (scheduler jobs, scripts, tests) are not counted.

    This captures ALL queries including those issued internally by
    SQLAlchemy eager-loading strategies (``selectinload``, ``joinedload``).

    Must be called once per engine (production engine in ``database.py``,
    test engine in ``conftest.py``).
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _count_query(conn, cursor, statement, parameters, context, executemany):
        stats = conn.info.get(QUERY_STATS_KEY)
        if stats is not None:
            stats.count += 1


# ---------------------------------------------------------------------------
# Middleware (pure ASGI)
# ---------------------------------------------------------------------------

class TimingMiddleware:
    """
    Pure ASGI middleware that adds two diagnostic response headers:

    - ``X-Response-Time-Ms``: wall-clock time for the entire request.
    - ``X-Query-Count``: total SQL queries executed during the request,
      read from the ``QueryStats`` object this middleware attaches to
      ``scope["state"]`` (visible to handlers as ``request.state``).
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        stats = QueryStats()
        scope.setdefault("state", {})[QUERY_STATS_KEY] = stats
        start = time.perf_counter()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                headers = list(message.get("headers", []))
                headers.append((b"x-response-time-ms", str(duration_ms).encode()))
                headers.append((b"x-query-count", str(stats.count).encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)
