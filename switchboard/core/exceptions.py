"""
Custom Exception Classes for Switchboard.

Every error carries an explicit ``kind`` so callers (the HTTP layer, the CLI,
tests) branch on what went wrong rather than on transport status codes.

Exception Hierarchy:
    SwitchboardError (base, kind=internal)
    ├── ValidationError (kind=validation)
    ├── ConflictError (kind=conflict)
    ├── NotFoundError (kind=not_found)
    ├── UpstreamUnavailableError (kind=upstream_unavailable)
    └── CacheError (kind=upstream_unavailable, logged and never surfaced)
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Categories of failure surfaced by Switchboard operations."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INTERNAL = "internal"


class SwitchboardError(Exception):
    """
    Base exception for all Switchboard errors.

    Attributes:
        message: Human-readable error description (surfaced verbatim to operators).
        kind: Failure category callers match on.
        error_code: Machine-readable error identifier.
        details: Additional error context (optional).
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        if kind is not None:
            self.kind = kind
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "kind": self.kind.value,
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# Caller Errors
# =============================================================================

class ValidationError(SwitchboardError):
    """
    Raised when operator input fails validation.

    Examples:
        - Manifest entry without a key
        - Tenant default without a tenant id
        - Override request without a tenant id
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str = "Validation failed",
        error_code: str = "VALIDATION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


class ConflictError(SwitchboardError):
    """Raised when an action conflicts with existing state."""

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        resource: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message or f"{resource} already exists",
            error_code=f"{resource.upper().replace(' ', '_')}_CONFLICT",
            details=details,
        )


class NotFoundError(SwitchboardError):
    """
    Raised when a requested resource does not exist.

    Examples:
        - Override applied to an unknown flag key
    """

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        resource: str,
        identifier: str | None = None,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        default_message = f"{resource} not found"
        if identifier:
            default_message = f'{resource} "{identifier}" not found.'

        super().__init__(
            message=message or default_message,
            error_code=f"{resource.upper().replace(' ', '_')}_NOT_FOUND",
            details=details or {"resource": resource, "identifier": identifier},
        )


# =============================================================================
# Collaborator Errors
# =============================================================================

class UpstreamUnavailableError(SwitchboardError):
    """
    Raised when the durable store cannot be reached during an explicit refresh.

    Lazy refreshes log this and keep serving the last-known-good snapshot.
    """

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(
        self,
        service: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message or f"{service} is currently unavailable",
            error_code="UPSTREAM_UNAVAILABLE",
            details=details or {"service": service},
        )


class CacheError(SwitchboardError):
    """
    Raised when a distributed cache operation fails.

    Note: Cache errors are logged and not propagated to users, as refresh
    degrades to the durable store.
    """

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(
        self,
        message: str = "Cache operation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, error_code="CACHE_ERROR", details=details)
