from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base for the closed set of errors the HTTP boundary maps to responses.

    Handlers branch on the subclass (or on ``error_code``), never on the
    message text. ``detail`` is sent to the client as ``error.details`` and
    must not carry internal state.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


class ValidationError(ServiceError):
    """Input was well-formed but rejected, e.g. an unknown verification token."""

    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    # Bad credentials and bad tokens share this one signal
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """A unique field is already taken; ``field`` says which one."""

    status_code = 409
    error_code = "conflict"
    default_message = "conflict"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None) -> None:
        super().__init__(message, detail={"field": field} if field else None)
        self.field = field


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InternalError",
]
