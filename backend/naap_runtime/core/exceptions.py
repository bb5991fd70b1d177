"""
NaaP Runtime - Error Taxonomy
=============================

Stable error codes and the exception hierarchy shared by the lifecycle
and gateway layers. The API renders every RuntimeServiceError as an
ErrorResponse with the same code, so client tooling can branch on it.
"""

import enum
from typing import Any, Optional


class ErrorCode(str, enum.Enum):
    """Stable, client-visible error codes."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_SLUG = "INVALID_SLUG"
    INVALID_VERSION = "INVALID_VERSION"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    MISSING_TEAM = "MISSING_TEAM"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    PLAN_IN_USE = "PLAN_IN_USE"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    HOST_NOT_ALLOWED = "HOST_NOT_ALLOWED"
    PORT_RANGE_EXHAUSTED = "PORT_RANGE_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RuntimeServiceError(Exception):
    """Base class for errors that map onto an HTTP status and stable code."""

    status_code: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    error: str = "Internal Server Error"

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationFailed(RuntimeServiceError):
    """Input rejected before any side effect."""
    status_code = 400
    code = ErrorCode.VALIDATION_ERROR
    error = "Validation Failed"


class Unauthorized(RuntimeServiceError):
    status_code = 401
    code = ErrorCode.UNAUTHORIZED
    error = "Unauthorized"


class NotFound(RuntimeServiceError):
    status_code = 404
    code = ErrorCode.NOT_FOUND
    error = "Not Found"


class ConflictingState(RuntimeServiceError):
    """Operation refused because of the current state of stored data."""
    status_code = 409
    code = ErrorCode.CONFLICT
    error = "Conflict"


class DependencyUnavailable(RuntimeServiceError):
    """An external collaborator (identity service, store, upstream) failed."""
    status_code = 503
    code = ErrorCode.DEPENDENCY_UNAVAILABLE
    error = "Service Unavailable"


class PortRangeExhausted(DependencyUnavailable):
    """No free port left in the configured range. Fatal for provisioning."""
    code = ErrorCode.PORT_RANGE_EXHAUSTED
