import asyncio
from dataclasses import replace

import pytest

from conftest import make_chunk
from livenotes.services.errors import (
    AlreadyInProgress,
    IngestionClosed,
    SourceDisconnected,
    StorageWriteError,
    UnknownTarget,
)
from livenotes.services.improvement_tracker import ImprovementState
from livenotes.services.models import MeetingAnalysis, SessionPatch


class ListSource:
    """Transcription source replaying payloads, with optional hooks and a final error."""

    def __init__(self, payloads, hooks=None, error=None):
        self.payloads = payloads
        self.hooks = hooks or {}
        self.error = error
        self.yielded = 0
        self.closed = False

    async def __aiter__(self):
        try:
            for index, payload in enumerate(self.payloads):
                hook = self.hooks.get(index)
                if hook is not None:
                    await hook()
                self.yielded += 1
                yield payload
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def _payload(chunk_id, text="hello"):
    return {
        "id": chunk_id,
        "timestamp": f"2024-05-06T09:00:{chunk_id:02d}Z",
        "transcription": text,
        "deviceName": "mic",
        "deviceType": "input",
    }


def test_segments_project_raw_chunks_with_overrides_and_speaker_names(meeting):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0, 0, text="raw zero"))
        await meeting.on_new_chunk(make_chunk(1, 1, text="raw one", speaker=None))
        await meeting.edit_chunk(0, "edited zero")
        await meeting.set_speaker_name("speaker_0", "Alice")

    asyncio.run(scenario())
    segments = meeting.segments
    assert [s.transcription for s in segments] == ["edited zero", "raw one"]
    assert [s.speaker for s in segments] == ["Alice", "Alice"]
    # A missing speaker label is not the same attribution for merging.
    assert len(meeting.data.merged_chunks) == 2


def test_new_chunk_registers_and_selects_device(meeting):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0, device="usb"))
        await meeting.deselect_device("usb")
        deselected = meeting.data.selected_devices
        await meeting.select_device("usb")
        return deselected

    deselected = asyncio.run(scenario())
    assert deselected == frozenset()
    assert meeting.data.device_names == {"usb"}
    assert meeting.data.selected_devices == {"usb"}
    with pytest.raises(UnknownTarget):
        asyncio.run(meeting.select_device("unknown"))


def test_improvement_replaces_display_text(meeting, repository):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0, text="um so the plan"))
        improved = await meeting.improve_chunk(0)
        return improved, await repository.get(meeting.data.id)

    improved, stored = asyncio.run(scenario())
    assert improved.text == "Improved chunk."
    assert meeting.segments[0].transcription == "Improved chunk."
    assert meeting.chunk_state(0) is ImprovementState.IMPROVED
    assert stored.edited_merged_chunks[0].text == "Improved chunk."
    assert stored.chunks[0].text == "um so the plan"


def test_improvement_sends_preceding_chunks_as_context(meeting, assistant, settings):
    settings.context_chunks = 2

    async def scenario():
        await meeting.reload_data()
        for i in range(4):
            await meeting.on_new_chunk(make_chunk(i, i, text=f"line {i}"))
        await meeting.improve_chunk(3)

    asyncio.run(scenario())
    _, text, context, _ = assistant.calls[0]
    assert text == "line 3"
    assert context == "[speaker_0]: line 1\n[speaker_0]: line 2"


def test_manual_edit_during_improvement_wins(meeting, assistant, repository):
    async def scenario():
        await meeting.reload_data()
        for i in range(6):
            await meeting.on_new_chunk(make_chunk(i, i * 0.5))
        assistant.gate = asyncio.Event()
        assistant.started = asyncio.Event()
        task = asyncio.create_task(meeting.improve_chunk(5))
        await assistant.started.wait()
        await meeting.edit_chunk(5, "what I actually said")
        assistant.gate.set()
        result = await task
        return result, await repository.get(meeting.data.id)

    result, stored = asyncio.run(scenario())
    assert result is None
    assert meeting.segments[5].transcription == "what I actually said"
    assert meeting.chunk_state(5) is ImprovementState.EDITED
    assert stored.edited_merged_chunks[5].is_manual


def test_concurrent_improvement_of_same_chunk_is_rejected(meeting, assistant):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0))
        assistant.gate = asyncio.Event()
        assistant.started = asyncio.Event()
        first = asyncio.create_task(meeting.improve_chunk(0))
        await assistant.started.wait()
        try:
            with pytest.raises(AlreadyInProgress):
                await meeting.improve_chunk(0)
        finally:
            assistant.gate.set()
        return await first

    assert asyncio.run(scenario()) is not None
    assert len([c for c in assistant.calls if c[0] == "improve_chunk"]) == 1


def test_failed_improvement_keeps_original_text(meeting, assistant):
    assistant.fail = True

    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0, text="original"))
        return await meeting.improve_chunk(0)

    assert asyncio.run(scenario()) is None
    assert meeting.segments[0].transcription == "original"
    assert meeting.chunk_state(0) is ImprovementState.FAILED


def test_unknown_chunk_is_reported(meeting):
    async def scenario():
        await meeting.reload_data()
        await meeting.improve_chunk(42)

    with pytest.raises(UnknownTarget):
        asyncio.run(scenario())


def test_storage_failure_keeps_edit_and_warns(meeting, store, repository):
    async def scenario():
        await meeting.reload_data()
        store.fail_writes = True
        saved = await meeting.set_title("Planning")
        persisted = repository.current
        stored = await repository.get(meeting.data.id)
        return saved, persisted, stored

    saved, persisted, stored = asyncio.run(scenario())
    assert saved is False
    assert meeting.title == "Planning"
    assert meeting.storage_warning
    assert persisted.title is None
    assert stored.title is None

    async def recover():
        store.fail_writes = False
        saved = await meeting.add_note("follow up")
        return saved, await repository.get(meeting.data.id)

    note, stored = asyncio.run(recover())
    assert meeting.storage_warning is None
    assert stored.title == "Planning"
    assert [n.text for n in stored.notes] == [note.text]


def test_failed_end_write_keeps_meeting_closed_until_saved(meeting, store, repository):
    async def scenario():
        await meeting.reload_data()
        store.fail_writes = True
        await meeting.set_title("Unsaved")
        with pytest.raises(StorageWriteError):
            await meeting.end_meeting()
        assert meeting.is_archived
        assert meeting.storage_warning
        with pytest.raises(IngestionClosed):
            await meeting.on_new_chunk(make_chunk(0))
        before = await repository.get(meeting.data.id)
        store.fail_writes = False
        assert await meeting.end_meeting() is True
        return before, await repository.get(meeting.data.id)

    before, after = asyncio.run(scenario())
    assert not before.is_archived
    assert after.is_archived
    assert after.title == "Unsaved"
    assert meeting.storage_warning is None


def test_end_meeting_closes_ingestion_and_is_idempotent(meeting, lifecycle):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0))
        assert await meeting.end_meeting() is True
        assert await meeting.end_meeting() is True
        with pytest.raises(IngestionClosed):
            await meeting.on_new_chunk(make_chunk(1))
        return await lifecycle.list_archived()

    archived = asyncio.run(scenario())
    assert meeting.is_archived
    assert [r.id for r in archived] == [meeting.data.id]
    assert len(archived[0].chunks) == 1


def test_ingest_stops_consuming_after_archive(meeting):
    source = ListSource(
        [_payload(i) for i in range(5)],
        hooks={2: meeting.end_meeting},
    )

    async def scenario():
        await meeting.reload_data()
        return await meeting.ingest(source)

    accepted = asyncio.run(scenario())
    assert accepted == 2
    assert source.yielded == 3
    assert source.closed
    assert len(meeting.data.chunks) == 2


def test_ingest_disconnect_pauses_without_ending_meeting(meeting):
    source = ListSource([_payload(0), _payload(1)], error=SourceDisconnected("connection reset"))

    async def scenario():
        await meeting.reload_data()
        return await meeting.ingest(source)

    assert asyncio.run(scenario()) == 2
    assert not meeting.is_archived
    assert meeting.data.chunks[0].is_input is True
    assert meeting.data.device_names == {"mic"}


def test_ingest_skips_duplicates_and_empty_text(meeting):
    source = ListSource([_payload(0), _payload(0), _payload(1, text="  "), _payload(2)])

    async def scenario():
        await meeting.reload_data()
        return await meeting.ingest(source)

    assert asyncio.run(scenario()) == 2
    assert [c.id for c in meeting.data.chunks] == [0, 2]


def test_note_helpers(meeting, repository):
    async def scenario():
        await meeting.reload_data()
        first = await meeting.add_note("first")
        second = await meeting.add_note("second", device="mic", is_input=True)
        edited = await meeting.edit_note(first.id, "first, edited")
        deleted = await meeting.delete_note(second.id)
        missing = await meeting.delete_note("nope")
        return edited, deleted, missing, await repository.get(meeting.data.id)

    edited, deleted, missing, stored = asyncio.run(scenario())
    assert edited.edited_at is not None
    assert deleted is True
    assert missing is False
    assert [n.text for n in stored.notes] == ["first, edited"]


def test_improve_note_uses_nearest_chunk(meeting, assistant):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0, text="we ship friday"))
        note = await meeting.add_note("ship date??")
        return await meeting.improve_note(note.id)

    improved = asyncio.run(scenario())
    assert improved.text == "improved note"
    assert meeting.notes[0].text == "improved note"
    _, note_text, chunk_line, _ = assistant.calls[0]
    assert note_text == "ship date??"
    assert chunk_line == "[speaker_0]: we ship friday"


def test_note_edited_during_improvement_keeps_user_text(meeting, assistant):
    async def scenario():
        await meeting.reload_data()
        note = await meeting.add_note("draft")
        assistant.gate = asyncio.Event()
        assistant.started = asyncio.Event()
        task = asyncio.create_task(meeting.improve_note(note.id))
        await assistant.started.wait()
        await meeting.edit_note(note.id, "my final wording")
        assistant.gate.set()
        return await task

    assert asyncio.run(scenario()) is None
    assert meeting.notes[0].text == "my final wording"


def test_summary_only_analysis_preserves_other_fields(meeting, assistant):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0, text="we agreed on the plan"))
        full = await meeting.generate_analysis()
        summary = await meeting.generate_analysis(summary_only=True)
        return full, summary

    full, summary = asyncio.run(scenario())
    assert full == assistant.analysis
    assert summary.summary == ("New summary.",)
    assert summary.facts == ("fact",)
    assert summary.decisions == ("decision",)


def test_failed_analysis_leaves_existing_analysis(meeting, assistant):
    existing = MeetingAnalysis(summary=("kept",))

    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0))
        await meeting.set_analysis(existing)
        assistant.fail = True
        return await meeting.generate_analysis()

    assert asyncio.run(scenario()) is None
    assert meeting.analysis == existing


def test_generate_title_sets_title(meeting):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0))
        return await meeting.generate_title()

    assert asyncio.run(scenario()) == "Weekly Sync"
    assert meeting.title == "Weekly Sync"


def test_regenerate_and_name_archived_meeting(meeting, lifecycle):
    async def scenario():
        await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0))
        await meeting.generate_analysis()
        record_id = meeting.data.id
        await meeting.end_meeting()
        regenerated = await meeting.regenerate_archived(record_id)
        named = await meeting.name_archived(record_id)
        missing = await meeting.name_archived("missing")
        return regenerated, named, missing

    regenerated, named, missing = asyncio.run(scenario())
    assert regenerated.analysis.summary == ("New summary.",)
    assert regenerated.analysis.facts == ("fact",)
    assert named.title == "Weekly Sync"
    assert named.is_archived
    assert named.analysis.summary == ("New summary.",)
    assert missing is None


def test_reload_reads_external_changes(meeting, repository):
    async def scenario():
        await meeting.reload_data()
        record = await repository.get(meeting.data.id)
        await repository.store.set(record.id, replace(record, title="From another tab").to_dict())
        await meeting.reload_data()

    asyncio.run(scenario())
    assert meeting.title == "From another tab"
    assert meeting.is_loading is False


def test_start_and_clear_meeting(meeting, lifecycle, store):
    async def scenario():
        first = await meeting.reload_data()
        await meeting.on_new_chunk(make_chunk(0))
        await meeting.end_meeting()
        second = await meeting.start_new_meeting()
        await meeting.add_note("scratch")
        third = await meeting.clear_meeting()
        return first, second, third, await lifecycle.list_archived(), await store.keys()

    first, second, third, archived, keys = asyncio.run(scenario())
    assert [r.id for r in archived] == [first.id]
    assert third.notes == ()
    assert not meeting.is_archived
    assert len(keys) == 2


def test_export_and_history(meeting):
    async def scenario():
        await meeting.reload_data()
        await meeting.set_title("Standup")
        await meeting.on_new_chunk(make_chunk(0, 0, text="first"))
        await meeting.on_new_chunk(make_chunk(1, 20, text="second"))
        await meeting.add_note("remember this")

    asyncio.run(scenario())
    markdown = meeting.export_markdown()
    assert markdown.startswith("# Standup")
    assert "- remember this" in markdown
    assert "09:00:00 [speaker_0] first" in markdown
    assert [len(group.chunks) for group in meeting.group_history()] == [1, 1]


def test_on_new_chunks_skips_duplicates(meeting):
    async def scenario():
        await meeting.reload_data()
        return await meeting.on_new_chunks([make_chunk(0), make_chunk(1, 1), make_chunk(1, 2), make_chunk(3, 3)])

    assert asyncio.run(scenario()) == 3
    assert [c.id for c in meeting.data.chunks] == [0, 1, 3]
    assert meeting.data.last_processed_index == 3


def test_update_store_keeps_viewed_record_archived(meeting, repository):
    async def scenario():
        await meeting.reload_data()
        await meeting.end_meeting()
        archived = meeting.data
        saved = await meeting.update_store(replace(archived, is_archived=False, title="Edited later"))
        return saved, await repository.get(archived.id)

    saved, stored = asyncio.run(scenario())
    assert saved is True
    assert stored.is_archived is True
    assert stored.title == "Edited later"


def test_chunk_accepted_before_end_is_archived_with_it(file_meeting):
    async def scenario():
        await file_meeting.reload_data()
        await file_meeting.on_new_chunk(make_chunk(0))
        results = await asyncio.gather(
            file_meeting.on_new_chunk(make_chunk(1, 1)),
            file_meeting.end_meeting(),
            return_exceptions=True,
        )
        return results, await file_meeting.lifecycle.repository.get(file_meeting.data.id)

    results, stored = asyncio.run(scenario())
    assert results == [True, True]
    assert stored.is_archived
    assert [c.id for c in stored.chunks] == [0, 1]


def test_chunk_offered_while_end_is_saving_is_refused(file_meeting):
    async def scenario():
        await file_meeting.reload_data()
        await file_meeting.on_new_chunk(make_chunk(0))
        results = await asyncio.gather(
            file_meeting.end_meeting(),
            file_meeting.on_new_chunk(make_chunk(1, 1)),
            return_exceptions=True,
        )
        return results, await file_meeting.lifecycle.repository.get(file_meeting.data.id)

    results, stored = asyncio.run(scenario())
    assert results[0] is True
    assert isinstance(results[1], IngestionClosed)
    assert stored.is_archived
    assert [c.id for c in stored.chunks] == [0]
    assert [c.id for c in file_meeting.data.chunks] == [0]


def test_update_of_viewed_record_keeps_unsaved_edits(meeting, store, repository):
    async def scenario():
        await meeting.reload_data()
        store.fail_writes = True
        assert await meeting.set_title("Kept title") is False
        store.fail_writes = False
        updated = await meeting.update_archived(meeting.data.id, SessionPatch(agenda="Roadmap"))
        return updated, await repository.get(meeting.data.id)

    updated, stored = asyncio.run(scenario())
    assert updated.title == "Kept title"
    assert updated.agenda == "Roadmap"
    assert stored.title == "Kept title"
    assert stored.agenda == "Roadmap"
    assert meeting.title == "Kept title"
    assert meeting.storage_warning is None
