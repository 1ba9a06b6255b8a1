"""Value types for the live meeting record.

Every type here is an immutable dataclass. Mutation happens by building a new
value with ``dataclasses.replace`` so a half-applied change can never leak
into the published view.

Persisted documents use the camelCase field names of the browser-era data
(``deviceName``, ``editedMergedChunks`` ...) so older exports keep loading.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional


class _Unset:
    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

RECORD_ID_PREFIX = "live-meeting-"
DEFAULT_SPEAKER = "speaker_0"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO string, epoch number, or datetime into an aware UTC datetime.

    Raises:
        ValueError: if the value cannot be interpreted as a point in time.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # Browser clients send milliseconds.
        if seconds > 1e11:
            seconds /= 1000.0
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_timestamp(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _require_mapping(data: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{kind} must be an object, got {type(data).__name__}")
    return data


def _require_list(value: Any, kind: str) -> list:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{kind} must be a list, got {type(value).__name__}")
    return list(value)


def record_id_for(start_time: datetime) -> str:
    return f"{RECORD_ID_PREFIX}{format_timestamp(start_time)}"


@dataclass(frozen=True)
class TranscriptionChunk:
    id: int
    timestamp: datetime
    text: str
    speaker: Optional[str] = None
    device_name: Optional[str] = None
    is_input: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "text": self.text,
            "speaker": self.speaker,
            "deviceName": self.device_name,
            "isInput": self.is_input,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TranscriptionChunk":
        data = _require_mapping(data, "chunk")
        if "id" not in data:
            raise ValueError("chunk is missing id")
        return cls(
            id=int(data["id"]),
            timestamp=parse_timestamp(data.get("timestamp")),
            text=str(data.get("text") or ""),
            speaker=_optional_str(data.get("speaker")),
            device_name=_optional_str(data.get("deviceName")),
            is_input=bool(data.get("isInput", False)),
        )


@dataclass(frozen=True)
class MergedSegment:
    """A run of consecutive chunks collapsed into one unit.

    Carries the first chunk's identity and attribution, the time of the last
    chunk folded in, and the ids of every chunk in the run.
    """

    id: int
    timestamp: datetime
    end_timestamp: datetime
    text: str
    speaker: Optional[str] = None
    device_name: Optional[str] = None
    is_input: bool = False
    chunk_ids: tuple[int, ...] = ()

    @classmethod
    def from_chunk(cls, chunk: TranscriptionChunk) -> "MergedSegment":
        return cls(
            id=chunk.id,
            timestamp=chunk.timestamp,
            end_timestamp=chunk.timestamp,
            text=chunk.text,
            speaker=chunk.speaker,
            device_name=chunk.device_name,
            is_input=chunk.is_input,
            chunk_ids=(chunk.id,),
        )

    def extend(self, chunk: TranscriptionChunk) -> "MergedSegment":
        text = f"{self.text} {chunk.text}".strip() if chunk.text else self.text
        return replace(
            self,
            end_timestamp=max(self.end_timestamp, chunk.timestamp),
            text=text,
            chunk_ids=self.chunk_ids + (chunk.id,),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "endTimestamp": format_timestamp(self.end_timestamp),
            "text": self.text,
            "speaker": self.speaker,
            "deviceName": self.device_name,
            "isInput": self.is_input,
            "chunkIds": list(self.chunk_ids),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MergedSegment":
        data = _require_mapping(data, "merged chunk")
        timestamp = parse_timestamp(data.get("timestamp"))
        chunk_ids = tuple(int(i) for i in _require_list(data.get("chunkIds"), "chunkIds"))
        return cls(
            id=int(data["id"]),
            timestamp=timestamp,
            end_timestamp=_optional_timestamp(data.get("endTimestamp")) or timestamp,
            text=str(data.get("text") or ""),
            speaker=_optional_str(data.get("speaker")),
            device_name=_optional_str(data.get("deviceName")),
            is_input=bool(data.get("isInput", False)),
            chunk_ids=chunk_ids or (int(data["id"]),),
        )


@dataclass(frozen=True)
class DiffOp:
    op: str
    original: str
    improved: str

    def to_dict(self) -> dict:
        return {"op": self.op, "original": self.original, "improved": self.improved}


@dataclass(frozen=True)
class ImprovedChunk:
    SOURCE_AI = "ai"
    SOURCE_MANUAL = "manual"

    text: str
    improved_at: datetime
    diff: tuple[DiffOp, ...] = ()
    source: str = "ai"

    @property
    def is_manual(self) -> bool:
        return self.source == self.SOURCE_MANUAL

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "diff": [op.to_dict() for op in self.diff],
            "improvedAt": format_timestamp(self.improved_at),
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ImprovedChunk":
        # Older documents stored the edited text as a bare string.
        if isinstance(data, str):
            return cls(text=data, improved_at=utcnow(), source=cls.SOURCE_MANUAL)
        data = _require_mapping(data, "improved chunk")
        diff = tuple(
            DiffOp(
                op=str(item.get("op", "equal")),
                original=str(item.get("original", "")),
                improved=str(item.get("improved", "")),
            )
            for item in _require_list(data.get("diff"), "diff")
            if isinstance(item, Mapping)
        )
        source = data.get("source") or cls.SOURCE_AI
        if source not in (cls.SOURCE_AI, cls.SOURCE_MANUAL):
            raise ValueError(f"unknown improvement source: {source!r}")
        return cls(
            text=str(data.get("text") or ""),
            improved_at=_optional_timestamp(data.get("improvedAt")) or utcnow(),
            diff=diff,
            source=source,
        )


@dataclass(frozen=True)
class Note:
    id: str
    text: str
    timestamp: datetime
    edited_at: Optional[datetime] = None
    is_input: bool = False
    device: str = ""

    @classmethod
    def create(cls, text: str, device: str = "", is_input: bool = False) -> "Note":
        return cls(
            id=uuid.uuid4().hex,
            text=text,
            timestamp=utcnow(),
            is_input=is_input,
            device=device,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "timestamp": format_timestamp(self.timestamp),
            "editedAt": format_timestamp(self.edited_at) if self.edited_at else None,
            "isInput": self.is_input,
            "device": self.device,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Note":
        data = _require_mapping(data, "note")
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            text=str(data.get("text") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            edited_at=_optional_timestamp(data.get("editedAt")),
            is_input=bool(data.get("isInput", False)),
            device=str(data.get("device") or ""),
        )


ANALYSIS_FIELDS = ("facts", "events", "flow", "decisions", "summary")


@dataclass(frozen=True)
class MeetingAnalysis:
    facts: tuple[str, ...] = ()
    events: tuple[str, ...] = ()
    flow: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()
    summary: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {name: list(getattr(self, name)) for name in ANALYSIS_FIELDS}

    @classmethod
    def from_dict(cls, data: Any) -> "MeetingAnalysis":
        data = _require_mapping(data, "analysis")
        return cls(**{name: _string_tuple(data.get(name)) for name in ANALYSIS_FIELDS})


def _string_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    return tuple(str(item) for item in _require_list(value, "analysis field"))


@dataclass(frozen=True)
class AnalysisPatch:
    """Partial analysis; fields left UNSET keep their stored value."""

    facts: Any = UNSET
    events: Any = UNSET
    flow: Any = UNSET
    decisions: Any = UNSET
    summary: Any = UNSET


def merge_analysis(
    existing: Optional[MeetingAnalysis], patch: "MeetingAnalysis | AnalysisPatch | None"
) -> Optional[MeetingAnalysis]:
    """Apply an analysis update.

    A full ``MeetingAnalysis`` (or ``None``) replaces the stored value
    wholesale. An ``AnalysisPatch`` only touches the fields it sets.
    """
    if patch is None or isinstance(patch, MeetingAnalysis):
        return patch
    base = existing or MeetingAnalysis()
    changes = {
        name: _string_tuple(getattr(patch, name))
        for name in ANALYSIS_FIELDS
        if getattr(patch, name) is not UNSET
    }
    return replace(base, **changes)


@dataclass(frozen=True)
class DisplaySegment:
    chunk_id: int
    timestamp: datetime
    transcription: str
    device_name: str
    speaker: str
    improved: bool = False

    def to_dict(self) -> dict:
        return {
            "chunkId": self.chunk_id,
            "timestamp": format_timestamp(self.timestamp),
            "transcription": self.transcription,
            "deviceName": self.device_name,
            "speaker": self.speaker,
            "improved": self.improved,
        }


@dataclass(frozen=True)
class SessionRecord:
    id: str
    start_time: datetime
    chunks: tuple[TranscriptionChunk, ...] = ()
    merged_chunks: tuple[MergedSegment, ...] = ()
    edited_merged_chunks: Mapping[int, ImprovedChunk] = field(default_factory=dict)
    speaker_mappings: Mapping[str, str] = field(default_factory=dict)
    last_processed_index: int = -1
    end_time: Optional[datetime] = None
    title: Optional[str] = None
    notes: tuple[Note, ...] = ()
    analysis: Optional[MeetingAnalysis] = None
    device_names: frozenset[str] = frozenset()
    selected_devices: frozenset[str] = frozenset()
    is_archived: bool = False
    agenda: Optional[str] = None
    participants: Optional[tuple[str, ...]] = None
    organizer: Optional[str] = None
    recurrence: Optional[str] = None

    @classmethod
    def new(cls, start_time: Optional[datetime] = None) -> "SessionRecord":
        start = start_time or utcnow()
        return cls(id=record_id_for(start), start_time=start)

    def chunk(self, chunk_id: int) -> Optional[TranscriptionChunk]:
        for chunk in self.chunks:
            if chunk.id == chunk_id:
                return chunk
        return None

    def note(self, note_id: str) -> Optional[Note]:
        for note in self.notes:
            if note.id == note_id:
                return note
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "mergedChunks": [segment.to_dict() for segment in self.merged_chunks],
            "editedMergedChunks": {
                str(chunk_id): improved.to_dict()
                for chunk_id, improved in sorted(self.edited_merged_chunks.items())
            },
            "speakerMappings": dict(self.speaker_mappings),
            "lastProcessedIndex": self.last_processed_index,
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time) if self.end_time else None,
            "title": self.title,
            "notes": [note.to_dict() for note in self.notes],
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "deviceNames": sorted(self.device_names),
            "selectedDevices": sorted(self.selected_devices),
            "isArchived": self.is_archived,
            "agenda": self.agenda,
            "participants": list(self.participants) if self.participants is not None else None,
            "organizer": self.organizer,
            "recurrence": self.recurrence,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionRecord":
        """Validate and load a stored document.

        Raises:
            ValueError: if the document is not shaped like a session record.
        """
        data = _require_mapping(data, "session record")
        if not data.get("startTime"):
            raise ValueError("session record is missing startTime")
        start_time = parse_timestamp(data["startTime"])
        edited_raw = data.get("editedMergedChunks") or {}
        edited = {
            int(key): ImprovedChunk.from_dict(value)
            for key, value in _require_mapping(edited_raw, "editedMergedChunks").items()
        }
        speaker_mappings = {
            str(key): str(value)
            for key, value in _require_mapping(data.get("speakerMappings") or {}, "speakerMappings").items()
        }
        analysis = data.get("analysis")
        device_names = frozenset(str(d) for d in _require_list(data.get("deviceNames"), "deviceNames"))
        selected = frozenset(str(d) for d in _require_list(data.get("selectedDevices"), "selectedDevices"))
        participants = data.get("participants")
        return cls(
            id=str(data.get("id") or record_id_for(start_time)),
            start_time=start_time,
            chunks=tuple(TranscriptionChunk.from_dict(c) for c in _require_list(data.get("chunks"), "chunks")),
            merged_chunks=tuple(
                MergedSegment.from_dict(c) for c in _require_list(data.get("mergedChunks"), "mergedChunks")
            ),
            edited_merged_chunks=edited,
            speaker_mappings=speaker_mappings,
            last_processed_index=int(data.get("lastProcessedIndex", -1)),
            end_time=_optional_timestamp(data.get("endTime")),
            title=_optional_str(data.get("title")),
            notes=tuple(Note.from_dict(n) for n in _require_list(data.get("notes"), "notes")),
            analysis=MeetingAnalysis.from_dict(analysis) if analysis else None,
            device_names=device_names | selected,
            selected_devices=selected,
            is_archived=bool(data.get("isArchived", False)),
            agenda=_optional_str(data.get("agenda")),
            participants=tuple(str(p) for p in participants) if isinstance(participants, list) else None,
            organizer=_optional_str(data.get("organizer")),
            recurrence=_optional_str(data.get("recurrence")),
        )


@dataclass(frozen=True)
class SessionPatch:
    """Explicit partial update for a stored record.

    Fields left UNSET are not part of the update. ``id`` is accepted only so
    callers passing a whole document do not fail; it is always pinned.
    """

    id: Any = UNSET
    title: Any = UNSET
    start_time: Any = UNSET
    end_time: Any = UNSET
    notes: Any = UNSET
    analysis: Any = UNSET
    speaker_mappings: Any = UNSET
    edited_merged_chunks: Any = UNSET
    selected_devices: Any = UNSET
    is_archived: Any = UNSET
    agenda: Any = UNSET
    participants: Any = UNSET
    organizer: Any = UNSET
    recurrence: Any = UNSET

    def included(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) is not UNSET]


def note_list(items: Iterable[Any]) -> tuple[Note, ...]:
    notes: list[Note] = []
    for item in items:
        notes.append(item if isinstance(item, Note) else Note.from_dict(item))
    return tuple(notes)
