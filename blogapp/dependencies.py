from fastapi import Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.config import settings
from blogapp.database import get_db
from blogapp.exceptions import NotFoundError, UnauthorizedError
from blogapp.models import User
from blogapp.services.user_service import get_live_user


class PaginationParams:
    """
    Reusable FastAPI dependency that parses and validates pagination
    query parameters.

    Usage in a router::

        @router.get("/reactions/liked-posts")
        async def liked_posts(pagination: PaginationParams = Depends()):
            ...

    Attributes
    ----------
    page:
        1-based page number (minimum 1).
    page_size:
        Number of items per page, clamped to ``settings.MAX_PAGE_SIZE``
        regardless of the value supplied by the caller.
    offset:
        Computed SQL OFFSET derived from *page* and *page_size*.
    """

    def __init__(
        self,
        page: int = Query(
            1,
            ge=1,
            description="Page number (1-based).",
        ),
        page_size: int = Query(
            settings.DEFAULT_PAGE_SIZE,
            ge=1,
            le=100,
            description="Number of items returned per page (max 100).",
        ),
    ) -> None:
        self.page = page
        # A settings change alone can lower the ceiling below the schema's.
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


async def get_current_user(
    x_user_id: int | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the acting user from the ``X-User-Id`` header.

    Authentication proper happens in front of this service; the gateway
    forwards the verified user id.  A missing header or an id that no
    longer maps to a live account is a 401.
    """
    if x_user_id is None:
        raise UnauthorizedError()
    try:
        return await get_live_user(db, x_user_id)
    except NotFoundError:
        raise UnauthorizedError()
