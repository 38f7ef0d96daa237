"""Exception types shared by the upload pipeline and its collaborators."""

from __future__ import annotations


class RemoteCallError(Exception):
    """Raised by a remote client when an upload/archive/probe call fails.

    The message is what the error classifier matches against; ``code`` is an
    optional service or transport error code (HTTP status, errno name, ...).
    """

    def __init__(self, message: str, code: int | str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ArchiveRejectedError(RemoteCallError):
    """Raised when the service answers an archive call with a non-ok status."""


class InvalidTransitionError(Exception):
    """Raised when an item lifecycle transition is not legal from its current status."""


class QueueLockedError(Exception):
    """Raised when another process already holds a queue's run lock."""
