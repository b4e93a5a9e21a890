from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base error for every rejection surfaced to API callers."""

    status_code = 400
    code = "error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class UnauthenticatedError(DomainError):
    status_code = 401
    code = "unauthenticated"


class ForbiddenError(DomainError):
    status_code = 403
    code = "forbidden"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"


class ValidationError(DomainError):
    """Raised for malformed input; `details` carries the offending field."""

    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, details: Any = None) -> None:
        if details is None and field is not None:
            details = {"field": field}
        super().__init__(message, details=details)
        self.field = field


class ConflictError(DomainError):
    status_code = 409
    code = "conflict"


class DependencyError(DomainError):
    status_code = 503
    code = "dependency_unavailable"
