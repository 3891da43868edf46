"""Structured domain errors.

Services raise these; the HTTP layer maps ``kind`` to a status code. Every
error carries a machine-readable ``kind`` and a human ``message`` so callers
can branch without parsing strings.
"""

from enum import Enum


class DenyReason(str, Enum):
    NOT_AUTHENTICATED = "NotAuthenticated"
    INSUFFICIENT_ROLE = "InsufficientRole"
    NOT_OWNER = "NotOwner"
    SELF_ACTION_FORBIDDEN = "SelfActionForbidden"


class DomainError(Exception):
    kind = "DomainError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(DomainError):
    kind = "ValidationError"


class NotFound(DomainError):
    kind = "NotFound"


class Conflict(DomainError):
    kind = "Conflict"


class AuthenticationRequired(DomainError):
    kind = "AuthenticationRequired"


class AuthorizationDenied(DomainError):
    kind = "AuthorizationDenied"

    def __init__(self, reason: DenyReason, message: str | None = None):
        super().__init__(message or f"Access denied: {reason.value}")
        self.reason = reason

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason": self.reason.value}


class DependencyUnavailable(DomainError):
    kind = "DependencyUnavailable"
