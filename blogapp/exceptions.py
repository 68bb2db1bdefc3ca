"""
Domain errors raised by the service layer.

Routers never build these responses by hand: ``install_error_handlers``
maps every ``AppError`` to a JSON body carrying only the public
``detail``.  Provider messages (storage SDK errors, SQL text) stay in the
logs.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    status_code: int = 500
    detail: str = "Internal Server Error"

    def __init__(self, detail: str | None = None) -> None:
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class NotFoundError(AppError):
    status_code = 404
    detail = "Document not found"


class StorageUnavailableError(AppError):
    """The blob store rejected or could not complete an operation."""

    status_code = 503
    detail = "We encountered an issue saving your files. Please try again."


class BadRequestError(AppError):
    status_code = 400
    detail = "Bad request"


class ConflictError(AppError):
    status_code = 409
    detail = "Conflict"


class ForbiddenError(AppError):
    status_code = 403
    detail = "Access denied: You do not have the required permissions."


class UnauthorizedError(AppError):
    status_code = 401
    detail = "Unauthorized"


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
