"""Error taxonomy shared by provider adapters, the rate limiter and the orchestrator.

Provider adapters normalize every HTTP failure into one of the ProviderError
subclasses below. The orchestrator decides what to do with a record based
only on the class:

- AuthError: terminal for the run, connection moves to status=error
- RateLimitError: retried with backoff honoring retry_after
- ValidationError: record (or field) skipped, run continues
- TransientError: retried up to a per-record ceiling, then queued for retry sweep
- NotFoundError: remote record is gone, SyncState gets unlinked
"""

from __future__ import annotations

from typing import Any


class CRMSyncError(Exception):
    """Base class for all engine errors."""


# ── Provider errors ─────────────────────────────────────────────────────────


class ProviderError(CRMSyncError):
    """Normalized failure returned by a provider adapter.

    Args:
        message: Human-readable description.
        provider: Provider name (hubspot, salesforce, pipedrive).
        status_code: HTTP status code if the failure came from a response.
        details: Raw provider error payload for the run log.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.details = details

    @property
    def kind(self) -> str:
        """Short machine-readable error kind for SyncRun log entries."""
        return _KIND_BY_CLASS.get(type(self), "provider_error")


class AuthError(ProviderError):
    """Credential is invalid or could not be refreshed."""


class RateLimitError(ProviderError):
    """Provider rejected the call for exceeding its rate limit."""

    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ValidationError(ProviderError):
    """Record or field payload was rejected as invalid."""


class TransientError(ProviderError):
    """Network failure, timeout or 5xx -- safe to retry."""

    retryable = True


class NotFoundError(ProviderError):
    """Remote record no longer exists."""


_KIND_BY_CLASS: dict[type, str] = {
    AuthError: "auth",
    RateLimitError: "rate_limit",
    ValidationError: "validation",
    TransientError: "transient",
    NotFoundError: "not_found",
}


# ── Engine errors ───────────────────────────────────────────────────────────


class Backpressure(CRMSyncError):
    """Rate limiter could not admit a request within its maximum wait.

    Treated by the orchestrator like a TransientError for the record at hand.
    """

    def __init__(self, connection_id: str, waited: float, bucket: str) -> None:
        super().__init__(
            f"Rate limiter backpressure for connection {connection_id} "
            f"({bucket} bucket, would wait {waited:.2f}s)"
        )
        self.connection_id = connection_id
        self.waited = waited
        self.bucket = bucket


class MappingConfigError(CRMSyncError):
    """Field mapping set is ambiguous or references an unknown transform."""


class ConnectionConflictError(CRMSyncError):
    """A second live connection was requested for the same (tenant, provider)."""


class ConnectionNotFoundError(CRMSyncError):
    """Referenced connection does not exist."""


class ContactNotFoundError(CRMSyncError, LookupError):
    """Host contact referenced by a sync pair is gone."""


class ConflictNotFoundError(CRMSyncError):
    """Referenced conflict does not exist."""


class ConflictClosedError(CRMSyncError):
    """Conflict was already resolved."""


class RunAborted(CRMSyncError):
    """Raised inside a run to move it to the Aborted state."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RunLogClosedError(CRMSyncError):
    """Attempted to mutate a SyncRun log after it was closed."""
