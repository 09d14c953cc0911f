"""
Exception hierarchy for CommitRelay.

Delivery errors are split by whether retrying can help: transient network
failures and 5xx responses are retryable, 4xx responses are not.
"""

from typing import Optional


class CommitRelayError(Exception):
    """Base class for all CommitRelay errors."""


class DeliveryError(CommitRelayError):
    """A request to the collection service did not succeed."""

    is_retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(DeliveryError):
    """Connection refused or reset, DNS failure, timeout or socket error."""

    is_retryable = True


class ServerError(DeliveryError):
    """The service answered with a 5xx status."""

    is_retryable = True


class ClientError(DeliveryError):
    """The service answered with a 4xx status; the request reached it."""

    is_retryable = False


class LocalStorageError(CommitRelayError):
    """The retry queue file could not be read or written."""


class ExtractionError(CommitRelayError):
    """Diff statistics for a single commit could not be computed."""


class WatcherStartError(CommitRelayError):
    """A repository watcher could not be started."""


__all__ = [
    'CommitRelayError', 'DeliveryError', 'TransientNetworkError', 'ServerError',
    'ClientError', 'LocalStorageError', 'ExtractionError', 'WatcherStartError',
]
