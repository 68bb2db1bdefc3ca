import enum


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    AUTHOR = "author"
    READER = "reader"


class PostStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"


class CommentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RoleStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RoleRequestAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class EntityType(str, enum.Enum):
    """Kind of row that owns an attachment."""

    POST = "post"
    USER = "user"


class TargetKind(str, enum.Enum):
    """Kind of row a reaction points at."""

    POST = "post"
    COMMENT = "comment"


class ReactionState(str, enum.Enum):
    NONE = "none"
    LIKED = "liked"
    DISLIKED = "disliked"
