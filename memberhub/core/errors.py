import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body.update(self.details)
        return body


class ValidationError(AppError):
    """Malformed input. Never retried."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, errors: list[dict] | None = None):
        if errors is None:
            errors = [{"field": field, "message": message}] if field else []
        super().__init__(message, details={"errors": errors} if errors else None)
        self.errors = errors


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(AppError):
    """Duplicate pending request, duplicate order id, already-member, ..."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidStateError(ConflictError):
    """Lifecycle transition not allowed from the current status."""

    code = "invalid_state"


class ExternalServiceError(AppError):
    """Payment gateway call failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "external_service_error"


class NotificationError(AppError):
    """Notification delivery failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "notification_error"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all other exceptions."""
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
