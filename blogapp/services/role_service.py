"""
Role service — users ask for a role, an admin approves or rejects.

This is the only way an account's role changes.  Admin cannot be
requested, a user has at most one pending request, and a request is
reviewed once.  Approving a request updates the user's role in the same
transaction that records the review.
"""
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.auth import authorize
from blogapp.enums import RoleRequestAction, RoleStatus, UserRole
from blogapp.exceptions import BadRequestError, ForbiddenError, NotFoundError
from blogapp.models import Role, User
from blogapp.schemas import PaginatedResponse

logger = logging.getLogger(__name__)


def role_request_to_dict(request: Role) -> dict:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "requested_role": request.requested_role.value,
        "status": request.status.value,
        "reviewed_by_id": request.reviewed_by_id,
        "created_at": request.created_at.isoformat() if request.created_at else None,
    }


async def create_role_request(db: AsyncSession, user: User, requested_role: UserRole) -> dict:
    if user.role is requested_role:
        raise BadRequestError("You already have this role.")
    if requested_role is UserRole.ADMIN:
        raise ForbiddenError("You cannot request admin role")

    pending_q = select(Role.id).where(
        Role.user_id == user.id,
        Role.status == RoleStatus.PENDING,
        Role.deleted_at.is_(None),
    )
    if (await db.execute(pending_q)).first() is not None:
        raise BadRequestError("You already have a pending role request.")

    request = Role(user_id=user.id, requested_role=requested_role, status=RoleStatus.PENDING)
    db.add(request)
    await db.flush()
    await db.refresh(request)

    logger.info("User %s requested role %s", user.id, requested_role.value)
    return role_request_to_dict(request)


async def review_role_request(
    db: AsyncSession,
    request_id: int,
    action: RoleRequestAction,
    admin: User,
) -> dict:
    """
    Approve or reject a pending request.  Raises ``NotFoundError``,
    ``BadRequestError`` for an already reviewed request and
    ``ForbiddenError`` for non-admins or a review of one's own request.
    """
    authorize("roles.review", admin)

    request = (
        await db.execute(
            select(Role)
            .where(Role.id == request_id, Role.deleted_at.is_(None))
            .with_for_update()
        )
    ).scalar_one_or_none()
    if request is None:
        raise NotFoundError()
    if request.status is not RoleStatus.PENDING:
        raise BadRequestError("Role request already reviewed.")
    if request.user_id == admin.id:
        raise ForbiddenError("You cannot approve your own request.")

    approved = action is RoleRequestAction.APPROVE
    if approved:
        result = await db.execute(
            update(User)
            .where(User.id == request.user_id, User.deleted_at.is_(None))
            .values(role=request.requested_role)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise NotFoundError("User not found.")

    request.status = RoleStatus.APPROVED if approved else RoleStatus.REJECTED
    request.reviewed_by_id = admin.id
    await db.flush()
    await db.refresh(request)

    logger.info(
        "Role request %s %s by admin %s", request_id, request.status.value, admin.id
    )
    return role_request_to_dict(request)


async def get_my_role_request(db: AsyncSession, user: User) -> dict:
    """The user's latest live request, whatever its status."""
    request = (
        await db.execute(
            select(Role)
            .where(Role.user_id == user.id, Role.deleted_at.is_(None))
            .order_by(Role.created_at.desc(), Role.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if request is None:
        raise NotFoundError()
    return role_request_to_dict(request)


async def list_role_requests(
    db: AsyncSession,
    admin: User,
    page: int = 1,
    page_size: int = 20,
    status: RoleStatus | None = None,
) -> PaginatedResponse:
    authorize("roles.review", admin)

    conditions = [Role.deleted_at.is_(None)]
    if status is not None:
        conditions.append(Role.status == status)

    total: int = (
        await db.execute(select(func.count()).select_from(Role).where(*conditions))
    ).scalar_one()
    requests = (
        await db.execute(
            select(Role)
            .where(*conditions)
            .order_by(Role.created_at.desc(), Role.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()
    return PaginatedResponse.of([role_request_to_dict(r) for r in requests], total, page, page_size)
