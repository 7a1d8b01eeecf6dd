from __future__ import annotations

import pytest

from conftest import ManualClock
from watchparty.errors import ValidationError
from watchparty.media_queue import QueueManager
from watchparty.models import ContentSummary, QueueEntry
from watchparty.playback import PlaybackSynchronizer, SyncOptions
from watchparty.realtime import MemoryStore
from watchparty.realtime.paths import queue_path

pytestmark = pytest.mark.anyio

ROOM = "ABC123"


def video(video_id: str) -> ContentSummary:
    return ContentSummary(
        external_id=video_id * 11,
        title=f"Video {video_id}",
        thumbnail_url=f"https://i.ytimg.com/vi/{video_id * 11}/default.jpg",
        channel_name="Channel",
    )


@pytest.fixture()
def playback(store: MemoryStore, clock: ManualClock) -> PlaybackSynchronizer:
    sync = PlaybackSynchronizer(store, ROOM, options=SyncOptions(throttle_seconds=10), clock=clock)
    yield sync
    sync.close()


@pytest.fixture()
def queue(store: MemoryStore, playback: PlaybackSynchronizer, clock: ManualClock) -> QueueManager:
    manager = QueueManager(store, ROOM, playback, clock=clock)
    playback.on_ended = manager.handle_playback_ended
    return manager


async def fill(queue: QueueManager, playback: PlaybackSynchronizer, *video_ids: str) -> list[QueueEntry]:
    entries = [await queue.add("Ann", video(video_id)) for video_id in video_ids]
    await playback.flush()
    return entries


async def test_add_to_empty_queue_starts_playback(queue, playback) -> None:
    (entry,) = await fill(queue, playback, "x")

    assert playback.state.content_id == entry.content_id
    assert playback.state.entry_id == entry.id
    assert playback.state.playing is True
    assert queue.current_entry() == entry


async def test_add_to_busy_queue_does_not_change_playback(queue, playback) -> None:
    first, _ = await fill(queue, playback, "a", "b")

    assert playback.state.entry_id == first.id
    assert [entry.content_id for entry in queue.entries] == ["a" * 11, "b" * 11]


async def test_added_entries_are_written_under_generated_keys(store, queue, playback, clock) -> None:
    first, second = await fill(queue, playback, "a", "a")

    stored = await store.read(queue_path(ROOM))

    assert first.id != second.id
    assert stored[first.id] == {
        "videoId": "a" * 11,
        "title": "Video a",
        "thumbnail": "https://i.ytimg.com/vi/aaaaaaaaaaa/default.jpg",
        "channel": "Channel",
        "addedBy": "Ann",
        "addedAt": int(clock() * 1000),
    }


async def test_invalid_content_is_rejected_before_writing(store, queue) -> None:
    with pytest.raises(ValidationError):
        await queue.add("Ann", {"external_id": "bad", "title": "x", "thumbnail_url": "t"})

    assert await store.read(queue_path(ROOM)) is None


async def test_removing_current_entry_advances_to_next(queue, playback) -> None:
    _, second, third = await fill(queue, playback, "a", "b", "c")
    queue.select(second.id)
    await playback.flush()

    await queue.remove(second.id)
    await playback.flush()

    assert playback.state.entry_id == third.id
    assert playback.state.playing is True


async def test_removing_current_last_entry_wraps_to_first(queue, playback) -> None:
    first, second = await fill(queue, playback, "a", "b")
    queue.select(second.id)
    await playback.flush()

    await queue.remove(second.id)
    await playback.flush()

    assert playback.state.entry_id == first.id


async def test_removing_only_entry_stops_playback(queue, playback) -> None:
    (only,) = await fill(queue, playback, "a")

    await queue.remove(only.id)
    await playback.flush()

    assert playback.state.content_id is None
    assert playback.state.playing is False
    assert queue.entries == []


async def test_removing_other_entry_keeps_playback(store, queue, playback) -> None:
    first, second = await fill(queue, playback, "a", "b")
    before = playback.state

    await queue.remove(second.id)

    assert playback.pending_changes == {}
    assert playback.state == before
    assert list(await store.read(queue_path(ROOM))) == [first.id]


async def test_duplicate_videos_are_told_apart_by_entry(queue, playback) -> None:
    first, second = await fill(queue, playback, "a", "a")

    queue.select(second.id)
    await playback.flush()

    assert queue.current_entry() == second
    assert queue.current_entry() != first


async def test_select_unknown_entry_is_rejected(queue) -> None:
    with pytest.raises(ValidationError):
        queue.select("missing")


async def test_ended_advances_then_stops_at_the_end(queue, playback) -> None:
    first, second = await fill(queue, playback, "a", "b")

    await queue.handle_playback_ended(playback.state)
    await playback.flush()
    assert playback.state.entry_id == second.id

    await queue.handle_playback_ended(playback.state)
    await playback.flush()
    assert playback.state.entry_id == second.id
    assert playback.state.playing is False


async def test_ended_for_outdated_content_is_ignored(queue, playback) -> None:
    first, _ = await fill(queue, playback, "a", "b")
    outdated = playback.state.model_copy(update={"content_id": "z" * 11, "entry_id": None})

    await queue.handle_playback_ended(outdated)

    assert playback.pending_changes == {}
    assert playback.state.entry_id == first.id


async def test_clear_empties_queue_and_stops(store, queue, playback) -> None:
    await fill(queue, playback, "a", "b")

    await queue.clear()
    await playback.flush()

    assert queue.entries == []
    assert await store.read(queue_path(ROOM)) is None
    assert playback.state.content_id is None


async def test_snapshot_defines_order_and_drops_malformed_entries(queue) -> None:
    await queue.apply_snapshot(
        {
            "-B": {"videoId": "b" * 11, "title": "B"},
            "-A": {"videoId": "a" * 11, "title": "A"},
            "-C": {"title": "missing id"},
        }
    )

    assert [entry.id for entry in queue.entries] == ["-A", "-B"]


async def test_removing_a_selection_not_yet_written_stops_playback(queue, playback) -> None:
    entry = await queue.add("Ann", video("x"))
    assert playback.target.entry_id == entry.id
    assert queue.current_entry() == entry

    await queue.remove(entry.id)
    await playback.flush()

    assert queue.entries == []
    assert playback.state.content_id is None
    assert playback.state.playing is False


async def test_clearing_before_the_selection_is_written_stops_playback(queue, playback) -> None:
    await queue.add("Ann", video("x"))

    await queue.clear()
    await playback.flush()

    assert playback.state.content_id is None
    assert playback.state.playing is False
