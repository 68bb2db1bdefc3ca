"""
Authorization rules as data.

``ROUTE_ROLES`` maps an action name to the roles allowed to perform it
on anyone's content.  Owners may always act on their own rows, which is
why callers pass ``owner_id`` where a row has an author.  ``authorize``
is the only place these rules are evaluated.
"""
from blogapp.enums import UserRole
from blogapp.exceptions import ForbiddenError

_STAFF = frozenset({UserRole.EDITOR, UserRole.ADMIN})

ROUTE_ROLES: dict[str, frozenset[UserRole]] = {
    "posts.create": frozenset({UserRole.AUTHOR}) | _STAFF,
    "posts.update": _STAFF,
    "posts.publish": _STAFF,
    "posts.unpublish": _STAFF,
    "posts.delete": _STAFF,
    # Only the author edits a comment.
    "comments.update": frozenset(),
    "comments.delete": _STAFF,
    "categories.manage": frozenset({UserRole.ADMIN}),
    "roles.review": frozenset({UserRole.ADMIN}),
    "users.delete": frozenset({UserRole.ADMIN}),
    "users.attachments": frozenset({UserRole.ADMIN}),
}


def authorize(action: str, user, owner_id: int | None = None) -> None:
    """Raise ``ForbiddenError`` unless *user* may perform *action*."""
    if owner_id is not None and owner_id == user.id:
        return
    if user.role in ROUTE_ROLES.get(action, frozenset()):
        return
    raise ForbiddenError()
