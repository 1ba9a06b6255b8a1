"""Utilities for transcript projection and display."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from livenotes.services.merge_policy import DEFAULT_SEGMENT_GAP_SECONDS
from livenotes.services.models import (
    DEFAULT_SPEAKER,
    DisplaySegment,
    SessionRecord,
    TranscriptionChunk,
    format_timestamp,
)


def resolve_speaker(record: SessionRecord, speaker: Optional[str]) -> str:
    label = speaker or DEFAULT_SPEAKER
    return record.speaker_mappings.get(label) or speaker or DEFAULT_SPEAKER


def project(record: Optional[SessionRecord]) -> list[DisplaySegment]:
    """Display segments for a record, one per raw chunk.

    An improvement or manual edit stored for a chunk always replaces the raw
    text; speaker labels go through the record's speaker name map.
    """
    if record is None:
        return []
    segments: list[DisplaySegment] = []
    for chunk in record.chunks:
        override = record.edited_merged_chunks.get(chunk.id)
        segments.append(
            DisplaySegment(
                chunk_id=chunk.id,
                timestamp=chunk.timestamp,
                transcription=override.text if override is not None else chunk.text,
                device_name=chunk.device_name or "",
                speaker=resolve_speaker(record, chunk.speaker),
                improved=override is not None,
            )
        )
    return segments


def _clock(value: datetime) -> str:
    return value.strftime("%H:%M:%S")


def transcript_text(record: Optional[SessionRecord]) -> str:
    """Plain transcript, one ``HH:MM:SS [speaker] text`` line per segment."""
    return "\n".join(
        f"{_clock(segment.timestamp)} [{segment.speaker}] {segment.transcription}"
        for segment in project(record)
        if segment.transcription.strip()
    )


def _history_speaker(chunk: TranscriptionChunk) -> str:
    if chunk.speaker:
        return chunk.speaker
    return "you" if chunk.is_input else "others"


@dataclass
class MeetingGroup:
    group: int
    start: datetime
    end: datetime
    chunks: list[TranscriptionChunk] = field(default_factory=list)
    device_names: set[str] = field(default_factory=set)
    transcript: str = ""

    def to_dict(self) -> dict:
        return {
            "meetingGroup": self.group,
            "meetingStart": format_timestamp(self.start),
            "meetingEnd": format_timestamp(self.end),
            "deviceNames": sorted(self.device_names),
            "fullTranscription": self.transcript,
            "segments": [chunk.to_dict() for chunk in self.chunks],
        }


def group_meetings(
    chunks: Iterable[TranscriptionChunk],
    gap_seconds: float = DEFAULT_SEGMENT_GAP_SECONDS,
) -> list[MeetingGroup]:
    """Split a transcription history into meetings.

    Chunks are sorted by time; a gap of ``gap_seconds`` or more between two
    consecutive chunks starts a new meeting.
    """
    max_gap = timedelta(seconds=gap_seconds)
    groups: list[MeetingGroup] = []
    current: Optional[MeetingGroup] = None
    previous: Optional[datetime] = None

    for chunk in sorted(chunks, key=lambda c: c.timestamp):
        if current is None or (previous is not None and chunk.timestamp - previous >= max_gap):
            current = MeetingGroup(group=len(groups) + 1, start=chunk.timestamp, end=chunk.timestamp)
            groups.append(current)
        current.end = chunk.timestamp
        current.chunks.append(chunk)
        if chunk.device_name:
            current.device_names.add(chunk.device_name)
        current.transcript += f"{_clock(chunk.timestamp)} [{_history_speaker(chunk)}] {chunk.text}\n"
        previous = chunk.timestamp

    return groups


def export_markdown(record: SessionRecord) -> str:
    title = record.title or "Meeting"
    lines = [
        f"# {title}",
        "",
        f"**Start:** {format_timestamp(record.start_time)}",
    ]
    if record.end_time:
        lines.append(f"**End:** {format_timestamp(record.end_time)}")
    lines.append("")

    analysis = record.analysis
    if analysis is not None:
        for heading, items in (
            ("Summary", analysis.summary),
            ("Decisions", analysis.decisions),
            ("Facts", analysis.facts),
            ("Events", analysis.events),
            ("Flow", analysis.flow),
        ):
            if not items:
                continue
            lines.append(f"## {heading}")
            lines.extend(f"- {item}" for item in items)
            lines.append("")

    if record.notes:
        lines.append("## Notes")
        for note in record.notes:
            lines.append(f"- {note.text}")
        lines.append("")

    transcript = transcript_text(record)
    if transcript:
        lines.append("## Transcript")
        lines.extend(transcript.splitlines())
    return "\n".join(lines)
