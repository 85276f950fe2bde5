"""Sync error taxonomy.

Only AuthError is fatal on its own. Throttle, transient and schema errors
share the pager's bounded retry budget; persistence errors are isolated to
the batch that raised them.
"""


class SyncError(Exception):
    """Base class for every error the sync engine raises on purpose."""

    retryable = False


class AuthError(SyncError):
    """Missing, expired or rejected credentials. Aborts the run."""


class ThrottleError(SyncError):
    """The provider rejected the query because the point budget is too low."""

    retryable = True

    def __init__(self, message: str, throttle=None, points_needed: int | None = None,
                 retry_after: float | None = None):
        super().__init__(message)
        self.throttle = throttle  # ThrottleStatus or None
        self.points_needed = points_needed
        self.retry_after = retry_after


class TransientNetworkError(SyncError):
    """Timeouts, connection failures, 5xx and provider-side temporary errors."""

    retryable = True


class SchemaError(SyncError):
    """Unexpected response shape. Retried, since provider version drift is the usual cause."""

    retryable = True


class PersistenceError(SyncError):
    """A batch failed to write to the local store."""
