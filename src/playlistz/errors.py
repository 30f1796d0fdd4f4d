"""Exception types raised by the playlist library.

Hierarchy:
    PlaylistzError (base)
        StorageUnavailable - store cannot be opened or a transaction aborted
        NotFound - an update targets a record that does not exist
        PayloadFetchFailed - a deferred payload could not be fetched
        BundleFormatError - an incoming bundle document is malformed

A content-hash mismatch during bundle import is not an error: the song is
simply marked for a lazy reload.
"""

from __future__ import annotations


class PlaylistzError(Exception):
    """Base exception for all library errors.

    Attributes:
        message: Human-readable error description.
        details: Optional context for logging (collection, key, locator, ...).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class StorageUnavailable(PlaylistzError):
    """Raised when the object store cannot be opened or a transaction aborts.

    Fatal for the attempted operation. The store never retries; callers decide
    whether to surface or retry.
    """


class NotFound(PlaylistzError):
    """Raised from an update function when the target record does not exist.

    The surrounding transaction is rolled back and no notification is sent.
    """


class PayloadFetchFailed(PlaylistzError):
    """Raised by fetchers when a payload locator cannot be resolved to bytes.

    Non-fatal: the payload loader catches it and leaves the entity pending.
    """


class BundleFormatError(PlaylistzError):
    """Raised when a bundle document does not match the expected wire shape."""
