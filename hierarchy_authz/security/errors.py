"""
Error taxonomy for the authorization pipeline.

Every error carries the HTTP status it maps to so the FastAPI layer can
translate it without a lookup table. Collaborator failures (cache, rule
engine, directory, JWKS) are converted to ``SubsystemUnavailable`` where
they are caught; callers never see a raw ``redis`` or ``sqlalchemy`` error.
"""

from __future__ import annotations

from collections.abc import Sequence


class AuthzError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(AuthzError):
    """No usable credential, or the credential failed verification. Never degraded."""

    status_code = 401

    NO_CREDENTIAL = "no_credential"
    INVALID = "invalid"
    EXPIRED = "expired"

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or _AUTHN_MESSAGES.get(reason, "Authentication failed"))
        self.reason = reason


_AUTHN_MESSAGES = {
    AuthenticationError.NO_CREDENTIAL: "Authentication required",
    AuthenticationError.INVALID: "Invalid credential",
    AuthenticationError.EXPIRED: "Credential expired",
}


class AuthorizationError(AuthzError):
    """Authenticated, but none of the subjects holds the required permission(s)."""

    status_code = 403

    def __init__(self, permissions: Sequence[str], message: str | None = None) -> None:
        self.permissions = tuple(permissions)
        super().__init__(message or f"Permission denied: {', '.join(self.permissions)}")


class SubsystemUnavailable(AuthzError):
    """A collaborator (cache, rule engine, directory, metadata store) failed or timed out."""

    status_code = 500

    def __init__(self, component: str, message: str) -> None:
        super().__init__(f"{component} unavailable: {message}")
        self.component = component


class ResolutionError(SubsystemUnavailable):
    """The character directory could not be queried."""

    def __init__(self, message: str) -> None:
        super().__init__("character directory", message)


class HierarchyIntegrityError(AuthzError):
    """
    Stored hierarchy violates the one-primary-per-user rule.

    A data fault, not an outage: the guard never degrades it to auth-only
    and the circuit breaker does not count it.
    """

    status_code = 500


class CircuitOpenError(SubsystemUnavailable):
    """Evaluation short-circuited because the breaker is open."""

    def __init__(self, retry_after: float) -> None:
        super().__init__("permission evaluation", f"circuit open, retry in {retry_after:.1f}s")
        self.retry_after = retry_after


class ValidationError(AuthzError):
    """Malformed permission identifier or administrative input."""

    status_code = 400


class AdministrationError(AuthzError):
    """An administrative write failed; the engine-side change was rolled back."""

    status_code = 500
