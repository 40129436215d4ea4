"""Exception hierarchy shared by the sync components."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by :mod:`pickup_sync`."""


class TransportError(SyncError):
    """The REST or socket transport could not be reached."""


class AuthenticationError(SyncError):
    """The server rejected the bearer token."""


class MutationError(SyncError):
    """A dispatched mutation did not complete; its optimistic state was rolled back."""


class MutationRejected(MutationError):
    """The server refused the mutation (validation or business rule)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MutationTimeout(MutationError):
    """No confirmation arrived before the mutation deadline."""


class DuplicateMutation(MutationError):
    """An identical mutation is still pending."""


class MalformedEvent(SyncError):
    """An inbound channel event failed validation."""


class BaselineFetchError(SyncError):
    """A snapshot fetch failed; the previous state was kept."""
