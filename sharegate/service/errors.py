from __future__ import annotations

from typing import Any, Optional


class CodedError(Exception):
    """Base class for errors that carry their own wire status.

    Raised deliberately by handlers, middleware and the backend client for
    expected conditions. The HTTP exception handlers and the WebSocket
    lifecycle manager turn these into transport responses; anything that is
    not a CodedError is reported as a generic 500.

    ``should_close`` only matters on WebSocket: the connection is closed
    after the error frame has been delivered.
    """

    status_code: int = 400
    error_code: str = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Any = None,
        error_code: Optional[str] = None,
        should_close: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail
        self.should_close = should_close


class BadRequestError(CodedError):
    """Request is malformed or missing a field (400)."""
    status_code = 400
    error_code = "BAD_REQUEST"


class MethodNotAllowedError(BadRequestError):
    """Known resource, unknown action or verb (400)."""
    error_code = "METHOD_NOT_ALLOWED"


class UnknownCommandError(BadRequestError):
    """WebSocket command with no registered handler (400)."""
    error_code = "UNKNOWN_COMMAND"


class AuthenticationError(CodedError):
    """Missing, malformed or rejected credentials (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class ForbiddenError(CodedError):
    """Credentials valid but not for this resource (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(CodedError):
    """Unknown resource or connection (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class UnprocessableError(CodedError):
    """Authorization could not be evaluated (422)."""
    status_code = 422
    error_code = "UNPROCESSABLE"


class RateLimitedError(CodedError):
    """Upstream rate limit propagated to the client (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(CodedError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class ServiceUnavailableError(CodedError):
    """Upstream unavailable or timed out (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


__all__ = [
    "CodedError",
    "BadRequestError",
    "MethodNotAllowedError",
    "UnknownCommandError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "UnprocessableError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
