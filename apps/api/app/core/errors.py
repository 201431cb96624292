from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base class for typed outcomes raised by the resource managers."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(ServiceError):
    """Resource or company absent, or owned by a different company."""

    code = "not_found"
    status_code = 404


class ConflictError(ServiceError):
    code = "conflict"
    status_code = 409


class InvalidInputError(ServiceError):
    code = "invalid_input"
    status_code = 422


class UnauthorizedError(ServiceError):
    """No usable caller identity."""

    code = "unauthorized"
    status_code = 401


class ForbiddenError(ServiceError):
    """Caller identity is valid but its roles do not grant the action."""

    code = "forbidden"
    status_code = 403


class InternalError(ServiceError):
    code = "internal"
    status_code = 500
