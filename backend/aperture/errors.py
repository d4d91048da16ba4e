"""Error taxonomy for ingest: configuration, remote provider, storage."""

from typing import Optional


class ConfigurationError(RuntimeError):
    """A required capability (credential, storage setting) is not configured."""


class RemoteProviderError(RuntimeError):
    """Listing or download at the remote file provider failed.

    ``reason`` is one of ``expired_token``, ``rate_limited``, ``not_found``,
    ``unavailable`` or ``error`` so callers can report the cause.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, reason: str = "error") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class StorageError(RuntimeError):
    """Blob upload or catalog write failed."""


class BlobExistsError(StorageError):
    """An object already exists at the target path (uploads never overwrite)."""


class DuplicateContentError(StorageError):
    """Catalog already holds an original for this checksum and scope."""
