from typing import Any, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.platform.logger import get_logger
from app.platform.response import api_response

logger = get_logger(__name__)


class AppError(Exception):
    """Base class for errors the API renders through the response envelope."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None, data: Optional[Any] = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)


class LimitReached(AppError):
    """Audit quota for the current period is exhausted."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Audit limit reached for the current billing period"


class ServiceUnavailable(AppError):
    """The crawler or render worker could not be reached in time."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"
    retryable = True


class AuditInProgress(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "An audit is already running for this project"


class JobAbandoned(AppError):
    """Raised/logged when a job made no progress within the staleness window."""

    status_code = status.HTTP_409_CONFLICT
    default_message = "abandoned"


class DatastoreError(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Datastore unavailable"
    retryable = True


class JobNotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Job not found"


class InvalidTransition(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Job is not in a state that allows this transition"


class CrawlerRequestError(AppError):
    """The crawler rejected a request (4xx). Not retried."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Crawler service rejected the request"


def add_exception_handlers(app):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return api_response(message=exc.message, status_code=exc.status_code, data=exc.data)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return api_response(
            message=str(exc.detail) or "Error",
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return api_response(
            message="Validation failed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            data={"errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return api_response(
            message="Internal server error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
