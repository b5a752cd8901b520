from __future__ import annotations
"""Exceptions raised by the transfer pipeline."""
from typing import Optional


class TransferError(Exception):
    """Base class for failures that end a single transfer item."""

    retryable = False


class ValidationError(TransferError):
    """A candidate broke a name, size or type rule."""

    def __init__(self, result) -> None:
        super().__init__(result.message)
        self.result = result


class TransferCancelledError(TransferError):
    """Raised when an upload or download is cancelled by the caller."""


class BrokerError(TransferError):
    """The credential broker refused or failed a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(BrokerError):
    retryable = True


class AuthError(BrokerError):
    """The bearer credential was rejected; the session must be discarded."""


class ProtocolError(BrokerError):
    """The broker answered with something that is not the agreed shape."""


class SizeLimitExceeded(BrokerError):
    pass


class RecordConflict(BrokerError):
    """A sibling with the same name already exists in the folder."""


class ObjectStoreError(TransferError):
    """The object store answered a transfer with a non-2xx status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordNotFoundError(LookupError):
    pass


class OrphanedObjectWarning(UserWarning):
    """Stored bytes and metadata went out of sync; logged, never raised."""

    def __init__(self, object_key: str, reason: str) -> None:
        super().__init__(f"Orphaned object '{object_key}': {reason}")
        self.object_key = object_key
        self.reason = reason
