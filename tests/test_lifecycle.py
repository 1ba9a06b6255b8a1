import asyncio
from dataclasses import replace

import pytest

from conftest import BASE_TIME, make_chunk
from livenotes.services.errors import ActiveMeetingExists, NoActiveMeeting
from livenotes.services.lifecycle import apply_session_patch
from livenotes.services.models import (
    AnalysisPatch,
    MeetingAnalysis,
    SessionPatch,
    SessionRecord,
    format_timestamp,
)


def test_start_new_refuses_second_active_record(lifecycle):
    async def scenario():
        await lifecycle.start_new(BASE_TIME)
        await lifecycle.start_new()

    with pytest.raises(ActiveMeetingExists):
        asyncio.run(scenario())


def test_archive_without_active_record_raises(lifecycle):
    with pytest.raises(NoActiveMeeting):
        asyncio.run(lifecycle.archive())


def test_archive_twice_is_idempotent(lifecycle, repository):
    async def scenario():
        record = await lifecycle.start_new(BASE_TIME)
        assert await lifecycle.archive() is True
        first = await repository.get(record.id)
        assert await lifecycle.archive() is True
        assert await lifecycle.archive(record.id) is True
        second = await repository.get(record.id)
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert first.is_archived
    assert first.end_time is not None


def test_archive_then_list_includes_record(lifecycle):
    async def scenario():
        record = await lifecycle.start_new(BASE_TIME)
        await lifecycle.archive()
        return record, await lifecycle.list_archived()

    record, archived = asyncio.run(scenario())
    assert [r.id for r in archived] == [record.id]
    assert archived[0].is_archived is True
    assert archived[0].end_time is not None


def test_archive_record_uses_the_given_record(lifecycle, repository):
    async def scenario():
        stored = await lifecycle.start_new(BASE_TIME)
        working = replace(stored, title="Unsaved title", chunks=(make_chunk(0),))
        archived = await lifecycle.archive_record(working)
        return archived, await repository.get(stored.id)

    archived, stored = asyncio.run(scenario())
    assert archived.is_archived
    assert stored.is_archived
    assert stored.end_time is not None
    assert stored.title == "Unsaved title"
    assert [c.id for c in stored.chunks] == [0]


def test_repository_keeps_published_archived_record_archived(lifecycle, repository):
    async def scenario():
        record = await lifecycle.start_new(BASE_TIME)
        await lifecycle.archive()
        archived = await repository.get(record.id)
        await repository.update_store(replace(record, title="Late write", chunks=(make_chunk(0),)))
        return archived, await repository.get(record.id)

    archived, stored = asyncio.run(scenario())
    assert stored.is_archived
    assert stored.end_time == archived.end_time
    assert stored.title == "Late write"
    assert repository.current.is_archived


def test_list_archived_newest_first_and_skips_active(lifecycle, repository):
    async def scenario():
        for hours in (0, 2, 1):
            record = SessionRecord.new(BASE_TIME.replace(hour=9 + hours))
            await repository.update_store(replace(record, is_archived=True))
        await lifecycle.start_new()
        return await lifecycle.list_archived()

    archived = asyncio.run(scenario())
    assert [r.start_time.hour for r in archived] == [11, 10, 9]


def test_list_archived_repairs_missing_id(lifecycle, store):
    async def scenario():
        await store.set("legacy", {"startTime": "2024-05-06T09:00:00Z", "isArchived": True})
        archived = await lifecycle.list_archived()
        return archived, await store.get("legacy")

    archived, raw = asyncio.run(scenario())
    assert archived[0].id == "live-meeting-2024-05-06T09:00:00Z"
    assert raw["id"] == "live-meeting-2024-05-06T09:00:00Z"


def test_delete_unknown_start_time_is_a_no_op(lifecycle, store):
    async def scenario():
        await lifecycle.start_new(BASE_TIME)
        await lifecycle.archive()
        before = await store.keys()
        await lifecycle.delete_archived("2001-01-01T00:00:00Z")
        await lifecycle.delete_archived("not a time")
        return before, await store.keys()

    before, after = asyncio.run(scenario())
    assert before == after


def test_delete_archived_by_start_time(lifecycle, store):
    async def scenario():
        await lifecycle.start_new(BASE_TIME)
        await lifecycle.archive()
        await lifecycle.delete_archived(format_timestamp(BASE_TIME))
        return await store.keys()

    assert asyncio.run(scenario()) == []


def test_delete_archived_leaves_active_record(lifecycle, store):
    async def scenario():
        await lifecycle.start_new(BASE_TIME)
        await lifecycle.delete_archived(BASE_TIME)
        return await store.keys()

    assert len(asyncio.run(scenario())) == 1


def test_summary_only_update_preserves_other_analysis_fields(lifecycle, repository):
    analysis = MeetingAnalysis(
        facts=("f",), events=("e",), flow=("fl",), decisions=("d",), summary=("old",)
    )

    async def scenario():
        record = await lifecycle.start_new(BASE_TIME)
        await repository.update_store(replace(record, analysis=analysis, title="Kickoff"))
        await lifecycle.archive()
        return await lifecycle.update(record.id, SessionPatch(analysis=AnalysisPatch(summary=["new"])))

    updated = asyncio.run(scenario())
    assert updated.analysis.summary == ("new",)
    assert updated.analysis.facts == ("f",)
    assert updated.analysis.events == ("e",)
    assert updated.analysis.flow == ("fl",)
    assert updated.analysis.decisions == ("d",)
    assert updated.title == "Kickoff"


def test_update_unknown_id_returns_none(lifecycle):
    assert asyncio.run(lifecycle.update("missing", SessionPatch(title="x"))) is None


def test_patch_pins_id_archive_flag_and_unincluded_fields():
    record = replace(
        SessionRecord.new(BASE_TIME), title="Kickoff", is_archived=True, chunks=(make_chunk(0),)
    )
    patched = apply_session_patch(record, SessionPatch(id="other", is_archived=False, agenda="plan"))
    assert patched.id == record.id
    assert patched.is_archived is True
    assert patched.title == "Kickoff"
    assert patched.start_time == record.start_time
    assert patched.agenda == "plan"
    assert patched.chunks == record.chunks


def test_patch_can_clear_title_when_included():
    record = replace(SessionRecord.new(BASE_TIME), title="Kickoff")
    assert apply_session_patch(record, SessionPatch(title=None)).title is None


def test_patch_selected_devices_registers_device():
    record = SessionRecord.new(BASE_TIME)
    patched = apply_session_patch(record, SessionPatch(selected_devices=["usb"]))
    assert patched.selected_devices <= patched.device_names


def test_clear_active_removes_without_archiving(lifecycle, store):
    async def scenario():
        record = await lifecycle.start_new(BASE_TIME)
        cleared = await lifecycle.clear_active()
        return record, cleared, await store.keys(), await lifecycle.list_archived()

    record, cleared, keys, archived = asyncio.run(scenario())
    assert cleared == record.id
    assert keys == []
    assert archived == []
