from __future__ import annotations

from typing import Any


class TimberSyncError(Exception):
    """Base error for TimberSync."""


class AuthenticationError(TimberSyncError):
    """Missing or invalid bearer credential, or an unknown device."""


class AuthorizationDenied(TimberSyncError):
    """An entitlement, category or license check returned Deny."""

    def __init__(self, reason: str, *, code: str = "AUTH_FORBIDDEN", context: dict[str, Any] | None = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code
        self.context = context or {}


class ValidationFailure(TimberSyncError):
    """Malformed or missing required input."""


class NotFoundError(TimberSyncError):
    """Requested record does not exist."""

    def __init__(self, message: str, *, resource: str | None = None, identity: str | None = None):
        super().__init__(message)
        self.resource = resource
        self.identity = identity


class LicenseNotFound(NotFoundError):
    """No license matches the supplied key."""


class ConflictError(TimberSyncError):
    """A unique key already exists (license_key, username, app_id, dataset)."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.value = value
        self.context = context or {}


class InfrastructureError(TimberSyncError):
    """Datastore unreachable or transaction conflict; distinct from a Deny."""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
