"""Per-target state for AI improvement requests.

Each target (a chunk id or a note id) moves through::

    untouched -> pending -> improved | failed

A manual edit moves any state to ``edited`` and invalidates a pending
request. Every dispatch gets a sequence number; a response is applied only if
its number is still the current one for the target.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Hashable, Mapping, Optional

from livenotes.services.errors import AlreadyInProgress, StaleImprovementResponse
from livenotes.services.models import DiffOp, ImprovedChunk, utcnow


class ImprovementState(Enum):
    UNTOUCHED = "untouched"
    PENDING = "pending"
    IMPROVED = "improved"
    FAILED = "failed"
    EDITED = "edited"


_TOKEN = re.compile(r"\S+")


def compute_diff(original: str, improved: str) -> tuple[DiffOp, ...]:
    """Word-level diff from ``original`` to ``improved``."""
    before = _TOKEN.findall(original)
    after = _TOKEN.findall(improved)
    matcher = difflib.SequenceMatcher(None, before, after, autojunk=False)
    ops: list[DiffOp] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        ops.append(
            DiffOp(
                op=tag,
                original=" ".join(before[i1:i2]),
                improved=" ".join(after[j1:j2]),
            )
        )
    return tuple(ops)


@dataclass
class _Entry:
    state: ImprovementState = ImprovementState.UNTOUCHED
    sequence: int = 0
    result: Optional[ImprovedChunk] = None


class ImprovementTracker:
    def __init__(self, name: str = "chunks") -> None:
        self._entries: dict[Hashable, _Entry] = {}
        self._logger = logging.getLogger(f"livenotes.improvements.{name}")

    def _entry(self, key: Hashable) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        return entry

    def seed(self, overrides: Mapping[Hashable, ImprovedChunk]) -> None:
        """Reset to the overrides found on a freshly loaded record."""
        self._entries = {}
        for key, improved in overrides.items():
            state = ImprovementState.EDITED if improved.is_manual else ImprovementState.IMPROVED
            self._entries[key] = _Entry(state=state, result=improved)

    def state(self, key: Hashable) -> ImprovementState:
        entry = self._entries.get(key)
        return entry.state if entry else ImprovementState.UNTOUCHED

    def result(self, key: Hashable) -> Optional[ImprovedChunk]:
        entry = self._entries.get(key)
        return entry.result if entry else None

    def sequence(self, key: Hashable) -> int:
        entry = self._entries.get(key)
        return entry.sequence if entry else 0

    def is_pending(self, key: Hashable) -> bool:
        return self.state(key) is ImprovementState.PENDING

    def begin(self, key: Hashable) -> int:
        """Mark ``key`` pending and return the request's sequence number.

        Raises:
            AlreadyInProgress: if a request for ``key`` is still pending.
        """
        entry = self._entry(key)
        if entry.state is ImprovementState.PENDING:
            raise AlreadyInProgress(key)
        entry.sequence += 1
        entry.state = ImprovementState.PENDING
        self._logger.debug("Improvement dispatched: key=%s seq=%s", key, entry.sequence)
        return entry.sequence

    def _check_current(self, key: Hashable, sequence: int) -> _Entry:
        entry = self._entries.get(key)
        current = entry.sequence if entry else 0
        if entry is None or entry.state is not ImprovementState.PENDING or sequence != current:
            raise StaleImprovementResponse(key, sequence, current)
        return entry

    def complete(self, key: Hashable, sequence: int, original: str, text: str) -> ImprovedChunk:
        """Record an AI result for the request ``sequence``.

        Raises:
            StaleImprovementResponse: if a newer request or a manual edit
                superseded this one.
        """
        entry = self._check_current(key, sequence)
        improved = ImprovedChunk(
            text=text,
            improved_at=utcnow(),
            diff=compute_diff(original, text),
            source=ImprovedChunk.SOURCE_AI,
        )
        entry.state = ImprovementState.IMPROVED
        entry.result = improved
        return improved

    def fail(self, key: Hashable, sequence: int) -> None:
        """Mark the request failed; stale failures are ignored."""
        try:
            entry = self._check_current(key, sequence)
        except StaleImprovementResponse as exc:
            self._logger.debug("Ignoring stale failure: %s", exc)
            return
        entry.state = ImprovementState.FAILED
        entry.result = None

    def record_manual_edit(self, key: Hashable, original: str, text: str) -> ImprovedChunk:
        entry = self._entry(key)
        # Bumping the sequence turns any in-flight response into a stale one.
        entry.sequence += 1
        entry.state = ImprovementState.EDITED
        entry.result = ImprovedChunk(
            text=text,
            improved_at=utcnow(),
            diff=compute_diff(original, text),
            source=ImprovedChunk.SOURCE_MANUAL,
        )
        return entry.result

    def discard(self, key: Hashable, kept: ImprovedChunk) -> None:
        """Drop an AI result that lost to ``kept`` (a manual edit)."""
        entry = self._entry(key)
        entry.state = ImprovementState.EDITED if kept.is_manual else ImprovementState.IMPROVED
        entry.result = kept
