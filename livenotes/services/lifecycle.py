"""Live/archived lifecycle of session records.

A record is created active, and archiving is one-way::

    ACTIVE -> ARCHIVED

Only one active record may exist. That is enforced by scanning before
creating, not by the store.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional, Union

from livenotes.services.errors import ActiveMeetingExists, NoActiveMeeting
from livenotes.services.models import (
    UNSET,
    ImprovedChunk,
    SessionPatch,
    SessionRecord,
    merge_analysis,
    note_list,
    parse_timestamp,
    record_id_for,
    utcnow,
)
from livenotes.services.session_repository import SessionRepository

_logger = logging.getLogger("livenotes.lifecycle")


def apply_session_patch(record: SessionRecord, patch: SessionPatch) -> SessionRecord:
    """Merge ``patch`` into ``record`` field by field.

    Pinning rules:
    - ``id`` never changes.
    - ``is_archived`` never goes back to False once True.
    - ``title`` and ``start_time`` change only when the patch includes them.
    - ``analysis`` given as an ``AnalysisPatch`` keeps the fields it leaves unset.
    - ``selected_devices`` also registers any device not yet known.
    """
    changes: dict[str, Any] = {}

    if patch.id is not UNSET and patch.id != record.id:
        _logger.debug("Ignoring id change in patch: id=%s requested=%s", record.id, patch.id)
    if patch.title is not UNSET:
        changes["title"] = patch.title
    if patch.start_time is not UNSET:
        changes["start_time"] = parse_timestamp(patch.start_time)
    if patch.end_time is not UNSET:
        changes["end_time"] = parse_timestamp(patch.end_time) if patch.end_time else None
    if patch.notes is not UNSET:
        changes["notes"] = note_list(patch.notes or ())
    if patch.analysis is not UNSET:
        changes["analysis"] = merge_analysis(record.analysis, patch.analysis)
    if patch.speaker_mappings is not UNSET:
        changes["speaker_mappings"] = {str(k): str(v) for k, v in (patch.speaker_mappings or {}).items()}
    if patch.edited_merged_chunks is not UNSET:
        changes["edited_merged_chunks"] = {
            int(k): v if isinstance(v, ImprovedChunk) else ImprovedChunk.from_dict(v)
            for k, v in (patch.edited_merged_chunks or {}).items()
        }
    if patch.selected_devices is not UNSET:
        selected = frozenset(str(d) for d in (patch.selected_devices or ()))
        changes["selected_devices"] = selected
        changes["device_names"] = record.device_names | selected
    for name in ("agenda", "organizer", "recurrence"):
        value = getattr(patch, name)
        if value is not UNSET:
            changes[name] = value
    if patch.participants is not UNSET:
        changes["participants"] = tuple(patch.participants) if patch.participants is not None else None

    if record.is_archived:
        if patch.is_archived is not UNSET and not patch.is_archived:
            _logger.debug("Ignoring un-archive in patch: id=%s", record.id)
    elif patch.is_archived is not UNSET and patch.is_archived:
        changes["is_archived"] = True
        if changes.get("end_time") is None and record.end_time is None:
            changes["end_time"] = utcnow()

    return replace(record, **changes)


class LifecycleController:
    def __init__(self, repository: SessionRepository) -> None:
        self._repository = repository
        self._logger = _logger

    @property
    def repository(self) -> SessionRepository:
        return self._repository

    async def start_new(self, start_time: Optional[datetime] = None) -> SessionRecord:
        """Create and persist an empty active record.

        Raises:
            ActiveMeetingExists: if an active record is already stored.
        """
        existing = await self._repository.get_active()
        if existing is not None:
            raise ActiveMeetingExists(
                f"Meeting {existing.id} is still active; archive or clear it first"
            )
        record = SessionRecord.new(start_time)
        await self._repository.set_active(record)
        self._logger.info("Meeting started: id=%s", record.id)
        return record

    async def ensure_active(self) -> SessionRecord:
        active = await self._repository.get_active()
        if active is not None:
            self._repository.publish(active)
            return active
        self._logger.info("No active meeting found, creating a new one")
        return await self.start_new()

    async def archive(self, record_id: Optional[str] = None) -> bool:
        """Archive the active record, or ``record_id`` when given.

        Archiving an already archived record succeeds without side effects.

        Raises:
            NoActiveMeeting: if there is nothing to archive.
        """
        if record_id is not None:
            target = await self._repository.get(record_id)
            if target is None:
                raise NoActiveMeeting(f"Meeting not found: {record_id}")
        else:
            target = await self._repository.get_active()
            if target is None:
                current = self._repository.current
                if current is not None and current.is_archived:
                    self._logger.info("Archive skipped, already archived: id=%s", current.id)
                    return True
                raise NoActiveMeeting("No active meeting to archive")

        if target.is_archived:
            self._logger.info("Archive skipped, already archived: id=%s", target.id)
            return True

        archived = replace(target, is_archived=True, end_time=target.end_time or utcnow())
        await self._repository.update_store(archived)
        self._logger.info(
            "Meeting archived: id=%s title=%s chunks=%d notes=%d",
            archived.id,
            archived.title,
            len(archived.chunks),
            len(archived.notes),
        )
        return True

    async def archive_record(self, record: SessionRecord) -> SessionRecord:
        """Archive ``record`` exactly as given, without re-reading storage.

        Raises:
            StorageWriteError: if the write was rejected.
        """
        archived = record if record.is_archived else replace(
            record, is_archived=True, end_time=record.end_time or utcnow()
        )
        await self._repository.update_store(archived)
        self._logger.info(
            "Meeting archived: id=%s title=%s chunks=%d notes=%d",
            archived.id,
            archived.title,
            len(archived.chunks),
            len(archived.notes),
        )
        return archived

    async def clear_active(self) -> Optional[str]:
        """Discard the active record without archiving it."""
        active = await self._repository.get_active()
        if active is None:
            self._repository.forget_current()
            return None
        await self._repository.remove(active.id)
        self._logger.info(
            "Meeting cleared: id=%s chunks=%d notes=%d", active.id, len(active.chunks), len(active.notes)
        )
        return active.id

    async def list_archived(self) -> list[SessionRecord]:
        """All archived records, newest start time first.

        Archived documents saved without an id get one derived from their
        start time, written back to the store.
        """
        repaired: list[str] = []

        async def _repair(value: Any, key: str) -> None:
            if not isinstance(value, dict) or not value.get("isArchived") or value.get("id"):
                return
            try:
                value["id"] = record_id_for(parse_timestamp(value.get("startTime")))
            except ValueError:
                return
            await self._repository.write_raw(key, value)
            repaired.append(key)

        await self._repository.store.iterate(_repair)
        if repaired:
            self._logger.info("Repaired archived metadata: keys=%s", repaired)

        archived = [record for _, record in await self._repository.scan() if record.is_archived]
        archived.sort(key=lambda r: r.start_time, reverse=True)
        return archived

    async def delete_archived(self, start_time: Union[str, datetime]) -> None:
        try:
            wanted = parse_timestamp(start_time)
        except ValueError:
            self._logger.info("Delete skipped, unparseable start time: %r", start_time)
            return
        for key, record in await self._repository.scan():
            if record.is_archived and record.start_time == wanted:
                await self._repository.remove(key)
                self._logger.info("Archived meeting deleted: key=%s start=%s", key, start_time)
                return
        self._logger.info("Archived meeting not found for deletion: start=%s", start_time)

    async def update(self, record_id: str, patch: SessionPatch) -> Optional[SessionRecord]:
        record = await self._repository.get(record_id)
        if record is None:
            self._logger.warning("Meeting not found for update: id=%s", record_id)
            return None
        updated = apply_session_patch(record, patch)
        await self._repository.update_store(updated)
        self._logger.info(
            "Meeting updated: id=%s fields=%s title=%s", record_id, patch.included(), updated.title
        )
        return updated
