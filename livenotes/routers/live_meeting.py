from typing import Callable, NoReturn, Optional

import asyncio
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from livenotes.services.errors import (
    ActiveMeetingExists,
    AlreadyInProgress,
    DuplicateChunkError,
    IngestionClosed,
    LiveMeetingError,
    NoActiveMeeting,
    StorageWriteError,
    UnknownTarget,
)
from livenotes.services.llm import LLMProviderError
from livenotes.services.meeting_context import MeetingContext
from livenotes.services.transcription_source import TranscriptionSource, normalize_chunk


class TitleRequest(BaseModel):
    title: Optional[str] = None


class NotesRequest(BaseModel):
    notes: list[dict]


class CreateNoteRequest(BaseModel):
    text: str = Field(..., min_length=1)
    device: str = ""
    is_input: bool = False


class EditTextRequest(BaseModel):
    text: str = Field(..., min_length=1)


class ChunkRequest(BaseModel):
    id: Optional[int] = None
    timestamp: Optional[str] = None
    text: str = Field(..., min_length=1)
    speaker: Optional[str] = None
    device_name: Optional[str] = None
    is_input: bool = False


class SpeakerNameRequest(BaseModel):
    name: Optional[str] = None


class AnalysisRequest(BaseModel):
    summary_only: bool = False
    instructions: Optional[str] = None


def raise_http_error(exc: Exception) -> NoReturn:
    """Translate an engine failure into the matching HTTP error."""
    if isinstance(exc, IngestionClosed):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, (NoActiveMeeting, UnknownTarget)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, (AlreadyInProgress, DuplicateChunkError, ActiveMeetingExists)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, StorageWriteError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if isinstance(exc, (LLMProviderError, ValueError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


def create_live_meeting_router(
    meeting: MeetingContext,
    source_factory: Optional[Callable[[], TranscriptionSource]] = None,
) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("livenotes.api.live")
    ingestion: dict = {"task": None}

    def _ingesting() -> bool:
        task = ingestion["task"]
        return task is not None and not task.done()

    def _ingestion_done(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Ingestion cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Ingestion failed: %s", exc, exc_info=exc)
            return
        logger.info("Ingestion task finished: accepted=%s", task.result())

    async def _stop_ingestion() -> None:
        task = ingestion["task"]
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    def _state(**extra) -> dict:
        state = meeting.snapshot()
        state["ingesting"] = _ingesting()
        state.update(extra)
        return state

    @router.get("/api/live")
    async def get_live_meeting() -> dict:
        try:
            await meeting.ensure_loaded()
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state()

    @router.post("/api/live/reload")
    async def reload_live_meeting() -> dict:
        try:
            await meeting.reload_data()
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state()

    @router.patch("/api/live/title")
    async def set_title(payload: TitleRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            saved = await meeting.set_title(payload.title)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(saved=saved)

    @router.put("/api/live/notes")
    async def replace_notes(payload: NotesRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            saved = await meeting.set_notes(payload.notes)
        except (LiveMeetingError, ValueError) as exc:
            raise_http_error(exc)
        return _state(saved=saved)

    @router.post("/api/live/notes")
    async def add_note(payload: CreateNoteRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            note = await meeting.add_note(payload.text, device=payload.device, is_input=payload.is_input)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(note=note.to_dict())

    @router.patch("/api/live/notes/{note_id}")
    async def edit_note(note_id: str, payload: EditTextRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            note = await meeting.edit_note(note_id, payload.text)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(note=note.to_dict())

    @router.delete("/api/live/notes/{note_id}")
    async def delete_note(note_id: str) -> dict:
        try:
            await meeting.ensure_loaded()
            deleted = await meeting.delete_note(note_id)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        if not deleted:
            raise HTTPException(status_code=404, detail="Note not found")
        return _state()

    @router.post("/api/live/notes/{note_id}/improve")
    async def improve_note(note_id: str) -> dict:
        try:
            await meeting.ensure_loaded()
            note = await meeting.improve_note(note_id)
        except (LiveMeetingError, LLMProviderError) as exc:
            raise_http_error(exc)
        return _state(improved=note is not None, note=note.to_dict() if note else None)

    @router.post("/api/live/chunks")
    async def add_chunk(payload: ChunkRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            chunk = normalize_chunk(payload.model_dump(exclude_none=True), meeting.next_chunk_id())
            saved = await meeting.on_new_chunk(chunk)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        logger.debug("Chunk accepted: id=%s saved=%s", chunk.id, saved)
        return _state(chunk=chunk.to_dict(), saved=saved)

    @router.patch("/api/live/chunks/{chunk_id}")
    async def edit_chunk(chunk_id: int, payload: EditTextRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            edited = await meeting.edit_chunk(chunk_id, payload.text)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(improvement=edited.to_dict())

    @router.post("/api/live/chunks/{chunk_id}/improve")
    async def improve_chunk(chunk_id: int) -> dict:
        try:
            await meeting.ensure_loaded()
            improved = await meeting.improve_chunk(chunk_id)
        except (LiveMeetingError, LLMProviderError) as exc:
            raise_http_error(exc)
        return _state(
            improved=improved is not None,
            improvement=improved.to_dict() if improved else None,
        )

    @router.put("/api/live/speakers/{label}")
    async def set_speaker_name(label: str, payload: SpeakerNameRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            saved = await meeting.set_speaker_name(label, payload.name)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(saved=saved)

    @router.post("/api/live/devices/{name}")
    async def select_device(name: str) -> dict:
        try:
            await meeting.ensure_loaded()
            saved = await meeting.select_device(name)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(saved=saved)

    @router.delete("/api/live/devices/{name}")
    async def deselect_device(name: str) -> dict:
        try:
            await meeting.ensure_loaded()
            saved = await meeting.deselect_device(name)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state(saved=saved)

    @router.post("/api/live/analysis")
    async def generate_analysis(payload: AnalysisRequest) -> dict:
        try:
            await meeting.ensure_loaded()
            analysis = await meeting.generate_analysis(
                summary_only=payload.summary_only, instructions=payload.instructions
            )
        except (LiveMeetingError, LLMProviderError) as exc:
            raise_http_error(exc)
        if analysis is None:
            raise HTTPException(status_code=400, detail="Analysis failed")
        return _state()

    @router.post("/api/live/title/generate")
    async def generate_title() -> dict:
        try:
            await meeting.ensure_loaded()
            title = await meeting.generate_title()
        except (LiveMeetingError, LLMProviderError) as exc:
            raise_http_error(exc)
        if title is None:
            raise HTTPException(status_code=400, detail="Title generation failed")
        return _state()

    @router.post("/api/live/end")
    async def end_meeting() -> dict:
        try:
            await meeting.ensure_loaded()
            await meeting.end_meeting()
        except LiveMeetingError as exc:
            await _stop_ingestion()
            raise_http_error(exc)
        await _stop_ingestion()
        logger.info("Meeting ended via API: id=%s", meeting.data.id if meeting.data else None)
        return _state()

    @router.post("/api/live/start")
    async def start_meeting() -> dict:
        try:
            await meeting.start_new_meeting()
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state()

    @router.post("/api/live/clear")
    async def clear_meeting() -> dict:
        try:
            await _stop_ingestion()
            await meeting.clear_meeting()
        except LiveMeetingError as exc:
            raise_http_error(exc)
        return _state()

    @router.get("/api/live/export", response_class=PlainTextResponse)
    async def export_meeting() -> str:
        try:
            await meeting.ensure_loaded()
            return meeting.export_markdown()
        except LiveMeetingError as exc:
            raise_http_error(exc)

    @router.post("/api/live/ingest")
    async def start_ingestion() -> dict:
        if source_factory is None:
            raise HTTPException(status_code=400, detail="No transcription source configured")
        try:
            await meeting.ensure_loaded()
        except LiveMeetingError as exc:
            raise_http_error(exc)
        if meeting.is_archived:
            raise HTTPException(status_code=409, detail="Meeting is archived")
        if not _ingesting():
            task = asyncio.create_task(meeting.ingest(source_factory()))
            task.add_done_callback(_ingestion_done)
            ingestion["task"] = task
            logger.info("Ingestion started")
        return _state()

    @router.get("/api/live/history")
    async def meeting_history() -> list[dict]:
        try:
            await meeting.ensure_loaded()
            return [group.to_dict() for group in meeting.group_history()]
        except LiveMeetingError as exc:
            raise_http_error(exc)

    return router
