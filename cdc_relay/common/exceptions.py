"""Error taxonomy for the CDC relay.

Every relay error carries a ``transient`` flag. Transient errors are absorbed
locally with bounded or unbounded retry; everything else is surfaced on the
status surface of the source relay or partition lane it belongs to.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""

    transient = False

    def __init__(self, message: str, source_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.source_id = source_id


class SourceUnavailable(RelayError):
    """Source change log cannot be reached. Retry with backoff."""

    transient = True


class SequenceGone(RelayError):
    """Requested resume position was purged by the source; resnapshot required."""

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        requested: Optional[int] = None,
        oldest_available: Optional[int] = None,
    ) -> None:
        super().__init__(message, source_id)
        self.requested = requested
        self.oldest_available = oldest_available


class MalformedEntry(RelayError):
    """Raw log entry cannot be normalized into a change event."""

    def __init__(
        self, message: str, source_id: Optional[str] = None, sequence: Optional[int] = None
    ) -> None:
        super().__init__(message, source_id)
        self.sequence = sequence


class DuplicateReader(RelayError):
    """A second reader was opened for a source that already has one."""


class TransportUnavailable(RelayError):
    """Durable transport refused or failed an append or read."""

    transient = True


class PublishRejected(RelayError):
    """Publish failed after the bounded number of attempts."""

    transient = True

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        sequence: Optional[int] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message, source_id)
        self.sequence = sequence
        self.attempts = attempts


class SinkUnavailable(RelayError):
    """Sink write failed for a transient reason; retried indefinitely."""

    transient = True


class SinkWriteError(RelayError):
    """Sink write failed permanently; the partition lane halts."""


class SchemaConflict(SinkWriteError):
    """A column value does not match the sink's declared column type."""

    def __init__(self, message: str, column: str, expected: str, actual: str) -> None:
        super().__init__(message)
        self.column = column
        self.expected = expected
        self.actual = actual


class RelayNotFound(RelayError):
    """No relay registered under the requested name."""
