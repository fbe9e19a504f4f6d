import logging
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that carry their own HTTP status."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    headers: Dict[str, str] = {}

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidCollection(ValidationFailed):
    pass


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    headers = {"WWW-Authenticate": "Bearer"}


class InvalidCredentials(Unauthorized):
    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class InactiveAccount(Unauthorized):
    def __init__(self, message: str = "Account is inactive"):
        super().__init__(message)


class InvalidOrExpiredToken(Unauthorized):
    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class UserNotFound(Unauthorized):
    def __init__(self, message: str = "User not found"):
        super().__init__(message)


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN


DUPLICATE_ENTRY_MESSAGE = "Duplicate entry: A record with this unique field already exists"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message},
            headers=exc.headers or None,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        payload: Dict[str, Any] = {"detail": "Internal server error"}
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
