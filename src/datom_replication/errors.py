"""Exception hierarchy for the replication engine and its stores."""

from __future__ import annotations


class ReplicationError(RuntimeError):
    """Base class for replication failures."""


class CommitError(ReplicationError):
    """Raised when a destination commit is rejected."""

    kind = "rejected"

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class TransientCommitError(CommitError):
    """Destination signalled a timeout; the same transaction may be retried."""

    kind = "timeout"


class SourceReadError(ReplicationError):
    """Raised when the source log or a source view cannot be read."""


class TranslationError(ReplicationError):
    """Source and destination schemas disagree in a way retrying cannot fix."""


class ReplicatorStateError(ReplicationError):
    """Raised on an invalid lifecycle transition."""
