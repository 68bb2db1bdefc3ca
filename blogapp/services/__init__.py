# Services package.
#
# Each module exposes async functions holding the business logic and
# database access for one part of the blog:
#
#   attachment_service  : blob-backed files owned by posts and users
#   category_service    : admin-managed categories
#   comment_service     : threaded comments, cascading soft delete
#   post_service        : post lifecycle, listings + cache for Post
#   purge_service       : scheduled hard delete of expired soft-deleted rows
#   reaction_service    : like / dislike toggling and counters
#   role_service        : role requests and their review
#   user_service        : accounts and account deletion
#
# Request-path functions accept an AsyncSession as their first argument
# so that the router layer controls the transaction boundary via the
# ``get_db`` dependency.  The reaction engine and account deletion are
# the exceptions: they commit while holding per-target locks.  The purge
# opens its own sessions.
