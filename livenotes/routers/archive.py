from typing import Optional

import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from livenotes.routers.live_meeting import raise_http_error
from livenotes.services.errors import LiveMeetingError
from livenotes.services.llm import LLMProviderError
from livenotes.services.meeting_context import MeetingContext
from livenotes.services.models import AnalysisPatch, MeetingAnalysis, SessionPatch


class UpdateArchivedRequest(BaseModel):
    title: Optional[str] = None
    start_time: Optional[str] = None
    agenda: Optional[str] = None
    participants: Optional[list[str]] = None
    organizer: Optional[str] = None
    recurrence: Optional[str] = None
    notes: Optional[list[dict]] = None
    speaker_mappings: Optional[dict[str, str]] = None
    analysis: Optional[dict] = None
    summary_only: bool = False


class RegenerateSummaryRequest(BaseModel):
    instructions: Optional[str] = None
    summary_only: bool = True


def _patch_from_request(payload: UpdateArchivedRequest) -> SessionPatch:
    fields = payload.model_dump(exclude_unset=True)
    summary_only = fields.pop("summary_only", False)
    analysis = fields.pop("analysis", None)
    if analysis is not None:
        if summary_only:
            if "summary" not in analysis:
                raise ValueError("A summary-only update needs a summary")
            fields["analysis"] = AnalysisPatch(summary=analysis["summary"])
        else:
            fields["analysis"] = MeetingAnalysis.from_dict(analysis)
    return SessionPatch(**fields)


def create_archive_router(meeting: MeetingContext) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("livenotes.api.archive")

    @router.get("/api/archive")
    async def list_archived() -> list[dict]:
        return [record.to_dict() for record in await meeting.list_archived()]

    @router.patch("/api/archive/{record_id}")
    async def update_archived(record_id: str, payload: UpdateArchivedRequest) -> dict:
        try:
            patch = _patch_from_request(payload)
            updated = await meeting.update_archived(record_id, patch)
        except (LiveMeetingError, ValueError) as exc:
            raise_http_error(exc)
        if updated is None:
            raise HTTPException(status_code=404, detail="Meeting not found")
        return updated.to_dict()

    @router.delete("/api/archive")
    async def delete_archived(start_time: str = Query(..., min_length=1)) -> dict:
        try:
            await meeting.delete_archived(start_time)
        except LiveMeetingError as exc:
            raise_http_error(exc)
        logger.debug("Delete requested: start_time=%s", start_time)
        return {"status": "ok"}

    @router.post("/api/archive/{record_id}/summary")
    async def regenerate_summary(record_id: str, payload: Optional[RegenerateSummaryRequest] = None) -> dict:
        payload = payload or RegenerateSummaryRequest()
        if await meeting.lifecycle.repository.get(record_id) is None:
            raise HTTPException(status_code=404, detail="Meeting not found")
        try:
            updated = await meeting.regenerate_archived(
                record_id, summary_only=payload.summary_only, instructions=payload.instructions
            )
        except (LiveMeetingError, LLMProviderError) as exc:
            raise_http_error(exc)
        if updated is None:
            raise HTTPException(status_code=400, detail="Summary generation failed")
        return updated.to_dict()

    @router.post("/api/archive/{record_id}/title")
    async def name_archived(record_id: str) -> dict:
        if await meeting.lifecycle.repository.get(record_id) is None:
            raise HTTPException(status_code=404, detail="Meeting not found")
        try:
            updated = await meeting.name_archived(record_id)
        except (LiveMeetingError, LLMProviderError) as exc:
            raise_http_error(exc)
        if updated is None:
            raise HTTPException(status_code=400, detail="Title generation failed")
        return updated.to_dict()

    return router
