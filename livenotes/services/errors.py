from __future__ import annotations


class LiveMeetingError(RuntimeError):
    pass


class DuplicateChunkError(LiveMeetingError):
    """A chunk id did not strictly increase over the stored chunks."""

    def __init__(self, chunk_id: int, last_id: int) -> None:
        super().__init__(f"Chunk id {chunk_id} is not greater than last stored id {last_id}")
        self.chunk_id = chunk_id
        self.last_id = last_id


class AlreadyInProgress(LiveMeetingError):
    """An improvement request is already pending for this target."""

    def __init__(self, key) -> None:
        super().__init__(f"Improvement already in progress for {key!r}")
        self.key = key


class StaleImprovementResponse(LiveMeetingError):
    def __init__(self, key, sequence: int, current: int) -> None:
        super().__init__(
            f"Stale improvement response for {key!r}: sequence={sequence} current={current}"
        )
        self.key = key
        self.sequence = sequence
        self.current = current


class StorageWriteError(LiveMeetingError):
    pass


class NoActiveMeeting(LiveMeetingError):
    pass


class IngestionClosed(NoActiveMeeting):
    """The record was archived; it no longer accepts chunks."""


class ActiveMeetingExists(LiveMeetingError):
    pass


class SourceDisconnected(LiveMeetingError):
    pass


class UnknownTarget(LiveMeetingError, LookupError):
    """No chunk or note with the requested id on the current record."""
