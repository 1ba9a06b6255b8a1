from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

# Ensure repo-root imports work (e.g., "livenotes.*")
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from livenotes.services.errors import StorageWriteError  # noqa: E402
from livenotes.services.kv_store import FileKeyValueStore, MemoryKeyValueStore  # noqa: E402
from livenotes.services.lifecycle import LifecycleController  # noqa: E402
from livenotes.services.live_config import LiveMeetingSettings  # noqa: E402
from livenotes.services.llm import LLMProviderError  # noqa: E402
from livenotes.services.meeting_context import MeetingContext  # noqa: E402
from livenotes.services.models import MeetingAnalysis, TranscriptionChunk  # noqa: E402
from livenotes.services.session_repository import SessionRepository  # noqa: E402

BASE_TIME = datetime(2024, 5, 6, 9, 0, 0, tzinfo=timezone.utc)


def make_chunk(
    chunk_id: int,
    minutes: float = 0.0,
    text: Optional[str] = None,
    speaker: Optional[str] = "speaker_0",
    device: Optional[str] = "mic",
    is_input: bool = True,
) -> TranscriptionChunk:
    return TranscriptionChunk(
        id=chunk_id,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        text=text if text is not None else f"chunk {chunk_id}",
        speaker=speaker,
        device_name=device,
        is_input=is_input,
    )


class FlakyStore(MemoryKeyValueStore):
    """Memory store whose writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    async def set(self, key, value) -> None:
        if self.fail_writes:
            raise StorageWriteError(f"Write rejected for {key}")
        await super().set(key, value)


class FakeAssistant:
    """Assistant double with canned replies.

    Set ``gate`` to an ``asyncio.Event`` to hold improvement calls until the
    test releases them; ``started`` is set once a call is waiting.
    """

    def __init__(self) -> None:
        self.chunk_reply = "Improved chunk."
        self.note_reply = "improved note"
        self.summary_reply = "New summary."
        self.title_reply = "Weekly Sync"
        self.analysis = MeetingAnalysis(
            facts=("fact",), events=("event",), flow=("flow",), decisions=("decision",), summary=("summary",)
        )
        self.fail = False
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None
        self.calls: list[tuple] = []

    async def _maybe_wait(self) -> None:
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise LLMProviderError("provider unavailable")

    async def improve_chunk(self, text, context, title=None):
        self.calls.append(("improve_chunk", text, context, title))
        await self._maybe_wait()
        return self.chunk_reply

    async def improve_note(self, note, chunk_line, title=None):
        self.calls.append(("improve_note", note, chunk_line, title))
        await self._maybe_wait()
        return self.note_reply

    async def analyze(self, transcript, notes=""):
        self.calls.append(("analyze", transcript, notes))
        await self._maybe_wait()
        return self.analysis

    async def summarize(self, transcript, instructions=None):
        self.calls.append(("summarize", transcript, instructions))
        await self._maybe_wait()
        return self.summary_reply

    async def generate_title(self, transcript):
        self.calls.append(("generate_title", transcript))
        await self._maybe_wait()
        return self.title_reply


@pytest.fixture()
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture()
def repository(store) -> SessionRepository:
    return SessionRepository(store)


@pytest.fixture()
def lifecycle(repository) -> LifecycleController:
    return LifecycleController(repository)


@pytest.fixture()
def assistant() -> FakeAssistant:
    return FakeAssistant()


@pytest.fixture()
def settings() -> LiveMeetingSettings:
    return LiveMeetingSettings()


@pytest.fixture()
def meeting(repository, lifecycle, assistant, settings) -> MeetingContext:
    return MeetingContext(repository, lifecycle, assistant, settings_loader=lambda: settings)


@pytest.fixture()
def file_meeting(tmp_path, assistant, settings) -> MeetingContext:
    repository = SessionRepository(FileKeyValueStore(str(tmp_path / "meetings")))
    return MeetingContext(repository, LifecycleController(repository), assistant, settings_loader=lambda: settings)
