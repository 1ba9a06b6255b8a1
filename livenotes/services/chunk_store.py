"""Append-only log of raw transcription chunks for one record."""

from __future__ import annotations

from typing import Iterable

from livenotes.services.errors import DuplicateChunkError
from livenotes.services.models import TranscriptionChunk


class ChunkStore:
    def __init__(self, chunks: Iterable[TranscriptionChunk] = ()) -> None:
        self._chunks: list[TranscriptionChunk] = list(chunks)

    @property
    def last_id(self) -> int:
        return self._chunks[-1].id if self._chunks else -1

    def append(self, chunk: TranscriptionChunk) -> None:
        """Append ``chunk``; ids must strictly increase.

        Raises:
            DuplicateChunkError: if ``chunk.id`` is not above the last stored id.
                The store is left unchanged.
        """
        if self._chunks and chunk.id <= self.last_id:
            raise DuplicateChunkError(chunk.id, self.last_id)
        self._chunks.append(chunk)

    def all(self) -> tuple[TranscriptionChunk, ...]:
        return tuple(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)
