"""
Reconciliation error types.

Every error carries a ``retryable`` flag. The controller retries all errors
with backoff, but errors that are not retryable need operator action and are
reported as such.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for errors raised during a reconciliation pass."""

    retryable = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(ReconcileError):
    """Required configuration (e.g. credentials) is missing or malformed."""

    retryable = False


class ProvisioningError(ReconcileError):
    """A call to the provisioning API failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class NotFoundError(ProvisioningError):
    """The external device does not exist."""


class ConflictError(ReconcileError):
    """The stored object changed since it was fetched."""


class ReconcileTimeoutError(ReconcileError):
    """A reconciliation pass exceeded its deadline and was cancelled."""
