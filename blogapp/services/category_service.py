"""
Category service — the admin-managed taxonomy posts are filed under.

Names are unique among live categories; the slug follows the name.
Deleting a category is a soft delete; posts keep their link rows until
the retention purge removes the category.
"""
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.auth import authorize
from blogapp.exceptions import ConflictError, NotFoundError
from blogapp.models import Category, User
from blogapp.schemas import CategoryCreate, CategoryUpdate, PaginatedResponse
from blogapp.services.post_service import slugify

logger = logging.getLogger(__name__)

CATEGORY_EXISTS = "Category with same name already exists"


def category_to_dict(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "slug": category.slug,
        "description": category.description,
        "created_at": category.created_at.isoformat() if category.created_at else None,
    }


async def _get_live_category(db: AsyncSession, category_id: int) -> Category:
    result = await db.execute(
        select(Category).where(Category.id == category_id, Category.deleted_at.is_(None))
    )
    category = result.scalar_one_or_none()
    if category is None:
        raise NotFoundError()
    return category


async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: int | None = None) -> None:
    q = select(Category.id).where(Category.name == name, Category.deleted_at.is_(None))
    if exclude_id is not None:
        q = q.where(Category.id != exclude_id)
    if (await db.execute(q)).first() is not None:
        raise ConflictError(CATEGORY_EXISTS)


async def create_category(db: AsyncSession, data: CategoryCreate, user: User) -> dict:
    authorize("categories.manage", user)
    await _ensure_name_free(db, data.name)

    category = Category(name=data.name, slug=slugify(data.name), description=data.description)
    db.add(category)
    await db.flush()
    await db.refresh(category)

    logger.info("Category %s created: %s", category.id, category.name)
    return category_to_dict(category)


async def update_category(db: AsyncSession, category_id: int, data: CategoryUpdate, user: User) -> dict:
    authorize("categories.manage", user)
    category = await _get_live_category(db, category_id)

    if data.name is not None:
        await _ensure_name_free(db, data.name, exclude_id=category_id)
        category.name = data.name
        category.slug = slugify(data.name)
    if data.description is not None:
        category.description = data.description
    await db.flush()
    await db.refresh(category)
    return category_to_dict(category)


async def get_category(db: AsyncSession, category_id: int) -> dict:
    return category_to_dict(await _get_live_category(db, category_id))


async def list_categories(
    db: AsyncSession,
    page: int = 1,
    page_size: int = 20,
    search: str | None = None,
) -> PaginatedResponse:
    """Live categories, newest first; *search* matches name or description."""
    conditions = [Category.deleted_at.is_(None)]
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Category.name.ilike(pattern), Category.description.ilike(pattern)))

    total: int = (
        await db.execute(select(func.count()).select_from(Category).where(*conditions))
    ).scalar_one()
    categories = (
        await db.execute(
            select(Category)
            .where(*conditions)
            .order_by(Category.created_at.desc(), Category.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()
    return PaginatedResponse.of([category_to_dict(c) for c in categories], total, page, page_size)


async def delete_category(db: AsyncSession, category_id: int, user: User) -> None:
    authorize("categories.manage", user)
    category = await _get_live_category(db, category_id)
    category.soft_delete()
    await db.flush()
    logger.info("Category %s soft-deleted", category_id)
