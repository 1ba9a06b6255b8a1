from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional

from livenotes.services.errors import StorageWriteError
from livenotes.services.kv_store import KeyValueStore
from livenotes.services.models import SessionRecord


class SessionRepository:
    """Session records kept one per key, addressed by record id.

    The repository also publishes the last successfully persisted version of
    the record it is tracking (``current``). Readers that need the freshest
    durable state, like the lifecycle controller, read it from here.
    Finding the active record is a full scan; record counts are expected to
    stay small.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._current: Optional[SessionRecord] = None
        self._logger = logging.getLogger("livenotes.repository")

    @property
    def store(self) -> KeyValueStore:
        return self._store

    @property
    def current(self) -> Optional[SessionRecord]:
        return self._current

    def _load(self, value: Any, key: str) -> Optional[SessionRecord]:
        try:
            return SessionRecord.from_dict(value)
        except (ValueError, TypeError, KeyError) as exc:
            self._logger.warning("Skipping invalid record: key=%s error=%s", key, exc)
            return None

    async def get(self, record_id: str) -> Optional[SessionRecord]:
        value = await self._store.get(record_id)
        if value is None:
            return None
        return self._load(value, record_id)

    async def scan(self) -> list[tuple[str, SessionRecord]]:
        found: list[tuple[str, SessionRecord]] = []

        def _visit(value: Any, key: str) -> None:
            record = self._load(value, key)
            if record is not None:
                found.append((key, record))

        await self._store.iterate(_visit)
        return found

    async def get_active(self) -> Optional[SessionRecord]:
        active = [record for _, record in await self.scan() if not record.is_archived]
        if not active:
            return None
        active.sort(key=lambda r: r.start_time, reverse=True)
        if len(active) > 1:
            self._logger.warning(
                "Found %d active records; using newest id=%s", len(active), active[0].id
            )
        return active[0]

    async def set_active(self, record: SessionRecord) -> SessionRecord:
        """Persist ``record`` and make it the published current record."""
        if record.is_archived:
            raise ValueError("An archived record cannot be made active")
        await self._write(record)
        self._current = record
        return record

    async def update_store(self, record: SessionRecord) -> bool:
        """Write the whole record under its id.

        On success the published view follows the write when it tracks the
        same record. On failure the published view is left as it was.
        A record whose published version is archived stays archived.

        Raises:
            StorageWriteError: if the persistence engine rejected the write.
        """
        published = self._current
        if (
            published is not None
            and published.id == record.id
            and published.is_archived
            and not record.is_archived
        ):
            self._logger.warning("Keeping record archived on write: id=%s", record.id)
            record = replace(record, is_archived=True, end_time=record.end_time or published.end_time)
        await self._write(record)
        if self._current is None or self._current.id == record.id:
            self._current = record
        return True

    async def _write(self, record: SessionRecord) -> None:
        try:
            await self._store.set(record.id, record.to_dict())
        except StorageWriteError:
            self._logger.warning("Record write failed: id=%s", record.id)
            raise
        self._logger.debug(
            "Record written: id=%s archived=%s chunks=%d notes=%d",
            record.id,
            record.is_archived,
            len(record.chunks),
            len(record.notes),
        )

    async def write_raw(self, key: str, value: Any) -> None:
        await self._store.set(key, value)

    async def remove(self, key: str) -> None:
        await self._store.remove(key)
        if self._current is not None and self._current.id == key:
            self._current = None

    def forget_current(self) -> None:
        self._current = None

    def publish(self, record: Optional[SessionRecord]) -> None:
        self._current = record
