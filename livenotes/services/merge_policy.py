"""Pure merge rules for live transcription.

``reconcile`` folds newly arrived chunks into the merged segments, and
``resolve_improvement`` decides which text wins when an AI rewrite and a
manual edit target the same chunk.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable, Optional, Sequence

from livenotes.services.models import ImprovedChunk, MergedSegment, TranscriptionChunk

DEFAULT_SEGMENT_GAP_SECONDS = 300.0


def can_extend(
    segment: MergedSegment,
    chunk: TranscriptionChunk,
    max_gap: timedelta,
) -> bool:
    if segment.device_name != chunk.device_name or segment.speaker != chunk.speaker:
        return False
    return chunk.timestamp - segment.end_timestamp < max_gap


def reconcile(
    existing_merged: Sequence[MergedSegment],
    new_raw_chunks: Iterable[TranscriptionChunk],
    last_processed_index: int,
    gap_seconds: float = DEFAULT_SEGMENT_GAP_SECONDS,
) -> tuple[tuple[MergedSegment, ...], int]:
    """Merge chunks newer than ``last_processed_index`` into the segment list.

    A chunk extends the last segment when it shares speaker and device with it
    and arrives less than ``gap_seconds`` after that segment's last chunk;
    otherwise it opens a new segment. Chunks at or below the high-water mark
    are skipped, so replaying the full chunk log after a reload is a no-op.

    Returns:
        Tuple of (merged segments, new last processed index)
    """
    max_gap = timedelta(seconds=gap_seconds)
    merged = list(existing_merged)
    index = last_processed_index

    for chunk in new_raw_chunks:
        if chunk.id <= index:
            continue
        if merged and can_extend(merged[-1], chunk, max_gap):
            merged[-1] = merged[-1].extend(chunk)
        else:
            merged.append(MergedSegment.from_chunk(chunk))
        index = chunk.id

    return tuple(merged), index


def resolve_improvement(
    current: Optional[ImprovedChunk], incoming: ImprovedChunk
) -> ImprovedChunk:
    """Pick the override to keep for one chunk.

    Human authorship dominates: a manual edit always replaces what is there,
    and an AI result never replaces a manual edit. Between two AI results the
    incoming one wins; ordering between those is settled by the tracker's
    sequence numbers before this is called.
    """
    if incoming.is_manual:
        return incoming
    if current is not None and current.is_manual:
        return current
    return incoming
