"""Application errors and the problem-detail responses clients receive."""

from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors reported to the client as a problem detail.

    The client only ever sees the type, title, status and, for some
    errors, a short detail. Internal context stays in the logs.
    """

    status: int = 500
    problem_type: str = "/errors/internal"
    title: str = "Internal Server Error"
    log_level: int = logging.ERROR
    log_message: str = "internal error"

    @property
    def detail(self) -> str | None:
        """Per-occurrence explanation that is safe to show to the client."""
        return None

    def problem(self) -> dict[str, Any]:
        """Return the public problem-detail body for this error."""
        body: dict[str, Any] = {
            "type": self.problem_type,
            "title": self.title,
            "status": self.status,
        }
        detail = self.detail
        if detail is not None:
            body["detail"] = detail
        return body

    def to_response(self) -> JSONResponse:
        """Log the error and turn it into a JSON response."""
        logger.log(self.log_level, "%s: %r", self.log_message, self)
        return JSONResponse(self.problem(), status_code=self.status)


class ValidationError(AppError):
    """The request was malformed or failed validation."""

    status = 400
    problem_type = "/errors/validation"
    title = "Validation Error"
    log_level = logging.DEBUG
    log_message = "validation error"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(f"Validation failed: {message}")
        self.message = message
        self.field = field

    @property
    def detail(self) -> str | None:
        return self.message


class NotFoundError(AppError):
    """A requested resource does not exist."""

    status = 404
    problem_type = "/errors/not-found"
    title = "Not Found"
    log_level = logging.DEBUG
    log_message = "not found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__("Resource not found")
        self.resource_type = resource_type
        self.resource_id = resource_id

    @property
    def detail(self) -> str | None:
        return f"{self.resource_type} not found"


class UnauthorizedError(AppError):
    """The request lacks valid authentication."""

    status = 401
    problem_type = "/errors/unauthorized"
    title = "Authentication Required"
    log_level = logging.INFO
    log_message = "unauthorized"

    def __init__(self) -> None:
        super().__init__("Authentication required")


class ForbiddenError(AppError):
    """The caller is authenticated but not allowed to do this."""

    status = 403
    problem_type = "/errors/forbidden"
    title = "Forbidden"
    log_level = logging.INFO
    log_message = "forbidden"

    def __init__(self) -> None:
        super().__init__("Insufficient permissions")


class ExternalServiceError(AppError):
    """A call to an upstream service failed."""

    def __init__(
        self,
        service: str,
        source: BaseException,
        status_hint: int | None = None,
    ) -> None:
        super().__init__(f"External service error: {service}")
        self.service = service
        self.source = source
        self.status_hint = status_hint
        self.__cause__ = source


class InternalError(AppError):
    """An unexpected internal failure."""

    def __init__(self, context: str, source: BaseException | None = None) -> None:
        super().__init__(f"Internal error: {context}")
        self.context = context
        self.source = source
        if source is not None:
            self.__cause__ = source


async def app_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Exception handler that renders an AppError as a problem detail."""
    if not isinstance(exc, AppError):
        exc = InternalError("unhandled exception", source=exc)
    return exc.to_response()