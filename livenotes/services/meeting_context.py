"""Single entry point the HTTP layer uses for the live meeting.

``MeetingContext`` owns the working view of the current record. Every
mutation helper reads the working view, changes one field, and writes the
whole record back. The working view is replaced before the write is awaited,
so a helper that runs while another one is suspended on storage starts from
the newer record rather than a stale snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

from livenotes.services.chunk_store import ChunkStore
from livenotes.services.errors import (
    DuplicateChunkError,
    IngestionClosed,
    NoActiveMeeting,
    SourceDisconnected,
    StaleImprovementResponse,
    StorageWriteError,
    UnknownTarget,
)
from livenotes.services.improvement_tracker import ImprovementState, ImprovementTracker
from livenotes.services.lifecycle import LifecycleController, apply_session_patch
from livenotes.services.live_config import LiveMeetingSettings
from livenotes.services.llm import LLMProviderError
from livenotes.services.merge_policy import reconcile, resolve_improvement
from livenotes.services.models import (
    AnalysisPatch,
    DisplaySegment,
    ImprovedChunk,
    MeetingAnalysis,
    Note,
    SessionPatch,
    SessionRecord,
    TranscriptionChunk,
    format_timestamp,
    merge_analysis,
    note_list,
    utcnow,
)
from livenotes.services.session_repository import SessionRepository
from livenotes.services.transcript_utils import (
    MeetingGroup,
    export_markdown,
    group_meetings,
    project,
    resolve_speaker,
    transcript_text,
)
from livenotes.services.transcription_source import TranscriptionSource, normalize_chunk


class MeetingContext:
    def __init__(
        self,
        repository: SessionRepository,
        lifecycle: Optional[LifecycleController] = None,
        assistant: Any = None,
        settings_loader: Callable[[], LiveMeetingSettings] = LiveMeetingSettings,
    ) -> None:
        self._repository = repository
        self._lifecycle = lifecycle or LifecycleController(repository)
        self._assistant = assistant
        self._settings_loader = settings_loader
        self._data: Optional[SessionRecord] = None
        self._is_loading = True
        self._loaded = False
        self._storage_warning: Optional[str] = None
        self._chunk_tracker = ImprovementTracker("chunks")
        self._note_tracker = ImprovementTracker("notes")
        self._logger = logging.getLogger("livenotes.meeting")

    # -- read side -------------------------------------------------------

    @property
    def data(self) -> Optional[SessionRecord]:
        return self._data

    @property
    def lifecycle(self) -> LifecycleController:
        return self._lifecycle

    @property
    def title(self) -> str:
        return (self._data.title if self._data else None) or ""

    @property
    def notes(self) -> tuple[Note, ...]:
        return self._data.notes if self._data else ()

    @property
    def segments(self) -> list[DisplaySegment]:
        # Recomputed on every read; the record is the only source.
        return project(self._data)

    @property
    def analysis(self) -> Optional[MeetingAnalysis]:
        return self._data.analysis if self._data else None

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_archived(self) -> bool:
        return bool(self._data and self._data.is_archived)

    @property
    def storage_warning(self) -> Optional[str]:
        return self._storage_warning

    def chunk_state(self, chunk_id: int) -> ImprovementState:
        return self._chunk_tracker.state(chunk_id)

    def note_state(self, note_id: str) -> ImprovementState:
        return self._note_tracker.state(note_id)

    def settings(self) -> LiveMeetingSettings:
        return self._settings_loader()

    def snapshot(self) -> dict:
        record = self._data
        return {
            "id": record.id if record else None,
            "title": self.title,
            "startTime": format_timestamp(record.start_time) if record else None,
            "endTime": format_timestamp(record.end_time) if record and record.end_time else None,
            "notes": [note.to_dict() for note in self.notes],
            "segments": [segment.to_dict() for segment in self.segments],
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "speakerMappings": dict(record.speaker_mappings) if record else {},
            "deviceNames": sorted(record.device_names) if record else [],
            "selectedDevices": sorted(record.selected_devices) if record else [],
            "improvements": {
                str(chunk.id): self.chunk_state(chunk.id).value
                for chunk in (record.chunks if record else ())
                if self.chunk_state(chunk.id) is not ImprovementState.UNTOUCHED
            },
            "isLoading": self.is_loading,
            "isArchived": self.is_archived,
            "storageWarning": self.storage_warning,
        }

    # -- loading ---------------------------------------------------------

    async def ensure_loaded(self) -> Optional[SessionRecord]:
        if not self._loaded:
            await self.reload_data()
        return self._data

    async def reload_data(self) -> Optional[SessionRecord]:
        """Re-read the active record from storage, creating one if none exists."""
        self._is_loading = True
        try:
            try:
                record = await self._lifecycle.ensure_active()
                self._storage_warning = None
            except StorageWriteError as exc:
                record = SessionRecord.new()
                self._storage_warning = str(exc)
                self._logger.warning("New meeting could not be saved: id=%s error=%s", record.id, exc)
            self._set_working(record)
            self._loaded = True
            self._logger.info(
                "Meeting loaded: id=%s chunks=%d notes=%d",
                record.id,
                len(record.chunks),
                len(record.notes),
            )
            return record
        finally:
            self._is_loading = False

    def _set_working(self, record: Optional[SessionRecord]) -> None:
        self._data = record
        self._chunk_tracker.seed(record.edited_merged_chunks if record else {})
        self._note_tracker.seed({})

    def _require_record(self) -> SessionRecord:
        if self._data is None:
            raise NoActiveMeeting("Meeting data is not loaded")
        return self._data

    # -- update path -----------------------------------------------------

    async def _commit(self, record: SessionRecord) -> bool:
        self._data = record
        try:
            await self._repository.update_store(record)
        except StorageWriteError as exc:
            self._storage_warning = f"Changes are not saved yet: {exc}"
            self._logger.warning("Storage write failed, keeping edit in memory: id=%s", record.id)
            return False
        self._storage_warning = None
        return True

    async def update_store(self, record: SessionRecord) -> bool:
        """Write a whole record; returns False when the write failed.

        The id and the archived flag of the record being viewed stay pinned.
        """
        current = self._data
        if current is not None and current.id == record.id and current.is_archived and not record.is_archived:
            record = replace(record, is_archived=True, end_time=record.end_time or current.end_time)
        return await self._commit(record)

    async def set_title(self, title: Optional[str]) -> bool:
        record = self._require_record()
        return await self._commit(replace(record, title=title))

    async def set_notes(self, notes: Iterable[Any]) -> bool:
        record = self._require_record()
        return await self._commit(replace(record, notes=note_list(notes)))

    async def add_note(self, text: str, device: str = "", is_input: bool = False) -> Note:
        record = self._require_record()
        note = Note.create(text, device=device, is_input=is_input)
        await self._commit(replace(record, notes=record.notes + (note,)))
        return note

    async def edit_note(self, note_id: str, text: str) -> Note:
        record = self._require_record()
        note = record.note(note_id)
        if note is None:
            raise UnknownTarget(f"Note not found: {note_id}")
        self._note_tracker.record_manual_edit(note_id, note.text, text)
        edited = replace(note, text=text, edited_at=utcnow())
        await self._commit(_replace_note(record, edited))
        return edited

    async def delete_note(self, note_id: str) -> bool:
        record = self._require_record()
        if record.note(note_id) is None:
            return False
        notes = tuple(note for note in record.notes if note.id != note_id)
        await self._commit(replace(record, notes=notes))
        return True

    async def set_analysis(self, analysis: "MeetingAnalysis | AnalysisPatch | None") -> bool:
        record = self._require_record()
        return await self._commit(replace(record, analysis=merge_analysis(record.analysis, analysis)))

    async def set_speaker_name(self, label: str, name: Optional[str]) -> bool:
        record = self._require_record()
        mappings = dict(record.speaker_mappings)
        if name:
            mappings[label] = name
        else:
            mappings.pop(label, None)
        return await self._commit(replace(record, speaker_mappings=mappings))

    async def select_device(self, name: str) -> bool:
        record = self._require_record()
        if name not in record.device_names:
            raise UnknownTarget(f"Unknown device: {name}")
        return await self._commit(replace(record, selected_devices=record.selected_devices | {name}))

    async def deselect_device(self, name: str) -> bool:
        record = self._require_record()
        return await self._commit(replace(record, selected_devices=record.selected_devices - {name}))

    # -- chunks ----------------------------------------------------------

    def next_chunk_id(self) -> int:
        record = self._data
        if record is None or not record.chunks:
            return 0
        return record.chunks[-1].id + 1

    async def on_new_chunk(self, chunk: TranscriptionChunk) -> bool:
        """Append one chunk and fold it into the merged segments.

        Raises:
            IngestionClosed: if the record has been archived.
            DuplicateChunkError: if the id does not increase; nothing changes.
        """
        record = self._require_record()
        if record.is_archived:
            raise IngestionClosed(f"Meeting {record.id} is archived")

        store = ChunkStore(record.chunks)
        store.append(chunk)
        merged, index = reconcile(
            record.merged_chunks,
            [chunk],
            record.last_processed_index,
            self.settings().segment_gap_seconds,
        )
        device_names = record.device_names
        selected = record.selected_devices
        if chunk.device_name and chunk.device_name not in device_names:
            device_names = device_names | {chunk.device_name}
            selected = selected | {chunk.device_name}

        return await self._commit(
            replace(
                record,
                chunks=store.all(),
                merged_chunks=merged,
                last_processed_index=index,
                device_names=device_names,
                selected_devices=selected,
            )
        )

    async def on_new_chunks(self, chunks: Iterable[TranscriptionChunk]) -> int:
        accepted = 0
        for chunk in chunks:
            try:
                await self.on_new_chunk(chunk)
            except DuplicateChunkError as exc:
                self._logger.warning("Chunk rejected: %s", exc)
                continue
            accepted += 1
        return accepted

    async def ingest(self, source: TranscriptionSource) -> int:
        """Consume a transcription source until the meeting ends or the stream stops.

        A dropped stream only pauses ingestion; the meeting stays active.
        Returns the number of chunks accepted.
        """
        accepted = 0
        iterator = source.__aiter__()
        try:
            async for payload in iterator:
                record = self._data
                if record is None or record.is_archived:
                    self._logger.info("Ingestion stopped, meeting is archived")
                    break
                chunk = normalize_chunk(payload, self.next_chunk_id())
                if not chunk.text:
                    continue
                try:
                    await self.on_new_chunk(chunk)
                except DuplicateChunkError as exc:
                    self._logger.warning("Chunk rejected: %s", exc)
                    continue
                except IngestionClosed:
                    self._logger.info("Ingestion stopped, meeting is archived")
                    break
                accepted += 1
        except SourceDisconnected as exc:
            self._logger.warning("Ingestion paused: %s", exc)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        self._logger.info("Ingestion finished: accepted=%d", accepted)
        return accepted

    # -- improvements ----------------------------------------------------

    def _display_text(self, record: SessionRecord, chunk: TranscriptionChunk) -> str:
        override = record.edited_merged_chunks.get(chunk.id)
        return override.text if override is not None else chunk.text

    def _chunk_context(self, record: SessionRecord, chunk_id: int) -> str:
        count = self.settings().context_chunks
        if count <= 0:
            return ""
        previous = [c for c in record.chunks if c.id < chunk_id][-count:]
        return "\n".join(
            f"[{resolve_speaker(record, c.speaker)}]: {self._display_text(record, c)}" for c in previous
        )

    def _require_assistant(self):
        if self._assistant is None:
            raise LLMProviderError("No AI assistant configured")
        return self._assistant

    async def edit_chunk(self, chunk_id: int, text: str) -> ImprovedChunk:
        record = self._require_record()
        chunk = record.chunk(chunk_id)
        if chunk is None:
            raise UnknownTarget(f"Chunk not found: {chunk_id}")
        manual = self._chunk_tracker.record_manual_edit(chunk_id, chunk.text, text)
        edited = dict(record.edited_merged_chunks)
        edited[chunk_id] = resolve_improvement(edited.get(chunk_id), manual)
        await self._commit(replace(record, edited_merged_chunks=edited))
        return manual

    async def improve_chunk(self, chunk_id: int) -> Optional[ImprovedChunk]:
        """Ask the AI service to clean up one chunk.

        Returns the applied improvement, or None when the request failed or
        lost to a manual edit. The original text is never destroyed.

        Raises:
            AlreadyInProgress: if a request for this chunk is pending.
        """
        record = self._require_record()
        chunk = record.chunk(chunk_id)
        if chunk is None:
            raise UnknownTarget(f"Chunk not found: {chunk_id}")
        assistant = self._require_assistant()

        sequence = self._chunk_tracker.begin(chunk_id)
        try:
            text = await assistant.improve_chunk(
                self._display_text(record, chunk),
                self._chunk_context(record, chunk_id),
                record.title,
            )
        except LLMProviderError as exc:
            self._chunk_tracker.fail(chunk_id, sequence)
            self._logger.warning("Chunk improvement failed: chunk=%s error=%s", chunk_id, exc)
            return None

        try:
            improved = self._chunk_tracker.complete(chunk_id, sequence, chunk.text, text)
        except StaleImprovementResponse as exc:
            self._logger.debug("Discarding improvement: %s", exc)
            return None

        current = self._data
        if current is None or current.id != record.id:
            self._logger.debug("Discarding improvement for a meeting no longer loaded: chunk=%s", chunk_id)
            return None
        existing = current.edited_merged_chunks.get(chunk_id)
        winner = resolve_improvement(existing, improved)
        if winner is not improved:
            self._chunk_tracker.discard(chunk_id, winner)
            self._logger.debug("Manual edit kept over improvement: chunk=%s", chunk_id)
            return None

        edited = dict(current.edited_merged_chunks)
        edited[chunk_id] = improved
        await self._commit(replace(current, edited_merged_chunks=edited))
        self._logger.info("Chunk improved: chunk=%s", chunk_id)
        return improved

    def _nearest_chunk(self, record: SessionRecord, note: Note) -> Optional[TranscriptionChunk]:
        before = [c for c in record.chunks if c.timestamp <= note.timestamp]
        if before:
            return before[-1]
        return record.chunks[-1] if record.chunks else None

    async def improve_note(self, note_id: str) -> Optional[Note]:
        record = self._require_record()
        note = record.note(note_id)
        if note is None:
            raise UnknownTarget(f"Note not found: {note_id}")
        assistant = self._require_assistant()

        chunk = self._nearest_chunk(record, note)
        chunk_line = (
            f"[{resolve_speaker(record, chunk.speaker)}]: {self._display_text(record, chunk)}" if chunk else ""
        )
        sequence = self._note_tracker.begin(note_id)
        try:
            text = await assistant.improve_note(note.text, chunk_line, record.title)
        except LLMProviderError as exc:
            self._note_tracker.fail(note_id, sequence)
            self._logger.warning("Note improvement failed: note=%s error=%s", note_id, exc)
            return None

        try:
            self._note_tracker.complete(note_id, sequence, note.text, text)
        except StaleImprovementResponse as exc:
            self._logger.debug("Discarding note improvement: %s", exc)
            return None

        current = self._data
        current_note = current.note(note_id) if current is not None else None
        if current_note is None:
            self._logger.debug("Note removed before improvement arrived: note=%s", note_id)
            return None
        if current_note.text != note.text:
            self._logger.debug("Note changed before improvement arrived: note=%s", note_id)
            return None

        improved = replace(current_note, text=text, edited_at=utcnow())
        await self._commit(_replace_note(current, improved))
        return improved

    # -- analysis --------------------------------------------------------

    def _notes_text(self, record: SessionRecord) -> str:
        return "\n".join(f"- {note.text}" for note in record.notes if note.text.strip())

    async def _build_analysis(
        self, record: SessionRecord, summary_only: bool, instructions: Optional[str]
    ) -> "MeetingAnalysis | AnalysisPatch":
        assistant = self._require_assistant()
        transcript = transcript_text(record)
        if summary_only:
            summary = await assistant.summarize(transcript, instructions)
            return AnalysisPatch(summary=[summary])
        return await assistant.analyze(transcript, self._notes_text(record))

    async def generate_analysis(
        self, summary_only: bool = False, instructions: Optional[str] = None
    ) -> Optional[MeetingAnalysis]:
        """Analyze the current record; summary-only keeps the other fields."""
        record = self._require_record()
        try:
            result = await self._build_analysis(record, summary_only, instructions)
        except LLMProviderError as exc:
            self._logger.warning("Analysis failed: id=%s error=%s", record.id, exc)
            return None

        current = self._data
        if current is None or current.id != record.id:
            return None
        analysis = merge_analysis(current.analysis, result)
        await self._commit(replace(current, analysis=analysis))
        return analysis

    async def generate_title(self) -> Optional[str]:
        record = self._require_record()
        try:
            title = await self._require_assistant().generate_title(transcript_text(record))
        except LLMProviderError as exc:
            self._logger.warning("Title generation failed: id=%s error=%s", record.id, exc)
            return None
        current = self._data
        if current is None or current.id != record.id:
            return None
        await self._commit(replace(current, title=title))
        return title

    async def regenerate_archived(
        self, record_id: str, summary_only: bool = True, instructions: Optional[str] = None
    ) -> Optional[SessionRecord]:
        record = await self._viewed_or_stored(record_id)
        if record is None:
            self._logger.warning("Meeting not found for regeneration: id=%s", record_id)
            return None
        try:
            result = await self._build_analysis(record, summary_only, instructions)
        except LLMProviderError as exc:
            self._logger.warning("Regeneration failed: id=%s error=%s", record_id, exc)
            return None
        return await self.update_archived(record_id, SessionPatch(analysis=result))

    async def name_archived(self, record_id: str) -> Optional[SessionRecord]:
        record = await self._viewed_or_stored(record_id)
        if record is None:
            self._logger.warning("Meeting not found for naming: id=%s", record_id)
            return None
        try:
            title = await self._require_assistant().generate_title(transcript_text(record))
        except LLMProviderError as exc:
            self._logger.warning("Naming failed: id=%s error=%s", record_id, exc)
            return None
        return await self.update_archived(record_id, SessionPatch(title=title))

    async def _viewed_or_stored(self, record_id: str) -> Optional[SessionRecord]:
        if self._data is not None and self._data.id == record_id:
            return self._data
        return await self._repository.get(record_id)

    # -- lifecycle -------------------------------------------------------

    async def end_meeting(self) -> bool:
        """Archive the working record; chunk ingestion for it stops.

        The working view is closed before the write, so chunks offered while
        the write is pending are refused. If the write fails the meeting
        stays closed and a later call retries the write.

        Raises:
            StorageWriteError: if the archived record could not be saved.
            NoActiveMeeting: if there is nothing to archive.
        """
        record = self._data
        if record is None:
            return await self._lifecycle.archive()
        if record.is_archived and not self._storage_warning:
            self._logger.info("Archive skipped, already archived: id=%s", record.id)
            return True

        if not record.is_archived:
            record = replace(record, is_archived=True, end_time=record.end_time or utcnow())
            self._data = record
        try:
            await self._lifecycle.archive_record(record)
        except StorageWriteError as exc:
            self._storage_warning = f"Meeting end is not saved yet: {exc}"
            self._logger.warning("Archive write failed, meeting stays closed: id=%s", record.id)
            raise
        self._storage_warning = None
        return True

    async def start_new_meeting(self) -> SessionRecord:
        record = await self._lifecycle.start_new()
        self._set_working(record)
        self._storage_warning = None
        self._loaded = True
        return record

    async def clear_meeting(self) -> SessionRecord:
        """Discard the active record without archiving and start a fresh one."""
        await self._lifecycle.clear_active()
        self._set_working(None)
        return await self.start_new_meeting()

    async def list_archived(self) -> list[SessionRecord]:
        return await self._lifecycle.list_archived()

    async def delete_archived(self, start_time) -> None:
        await self._lifecycle.delete_archived(start_time)

    async def update_archived(self, record_id: str, patch: SessionPatch) -> Optional[SessionRecord]:
        """Apply ``patch`` to a stored record.

        The record being viewed is patched from the working view, so edits
        not yet saved are kept and written along with the patch.
        """
        current = self._data
        if current is None or current.id != record_id:
            return await self._lifecycle.update(record_id, patch)
        updated = apply_session_patch(current, patch)
        await self._commit(updated)
        self._logger.info("Meeting updated from working view: id=%s", record_id)
        return updated

    def export_markdown(self) -> str:
        return export_markdown(self._require_record())

    def group_history(self) -> list[MeetingGroup]:
        record = self._require_record()
        return group_meetings(record.chunks, self.settings().segment_gap_seconds)


def _replace_note(record: SessionRecord, note: Note) -> SessionRecord:
    return replace(record, notes=tuple(note if n.id == note.id else n for n in record.notes))
