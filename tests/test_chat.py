from __future__ import annotations

import pytest

from conftest import ManualClock
from watchparty.chat import ChatLog
from watchparty.errors import TransientStoreError, ValidationError
from watchparty.realtime import MemoryStore
from watchparty.realtime.paths import chat_path

pytestmark = pytest.mark.anyio

ROOM = "ABC123"


async def test_messages_are_displayed_in_timestamp_order(store: MemoryStore) -> None:
    chat = ChatLog(store, ROOM)
    await store.subscribe(chat_path(ROOM), chat.apply_snapshot)

    for timestamp in (300, 100, 200):
        await store.append(chat_path(ROOM), {"user": "Ann", "text": f"at {timestamp}", "timestamp": timestamp})
    await store.flush()

    assert [message.timestamp for message in chat.messages] == [100, 200, 300]


async def test_send_appends_trimmed_text_with_sender_clock(store: MemoryStore, clock: ManualClock) -> None:
    chat = ChatLog(store, ROOM, clock=clock)

    message = await chat.send("Ann", "  hello  ")

    stored = await store.read(chat_path(ROOM))
    assert stored == {message.id: {"user": "Ann", "text": "hello", "timestamp": int(clock() * 1000)}}


@pytest.mark.parametrize("text", ["", "x" * 201])
async def test_invalid_message_is_not_written(store: MemoryStore, text: str) -> None:
    chat = ChatLog(store, ROOM)

    with pytest.raises(ValidationError):
        await chat.send("Ann", text)

    assert await store.read(chat_path(ROOM)) is None


async def test_send_failure_surfaces_transient_error(store: MemoryStore) -> None:
    chat = ChatLog(store, ROOM)
    await store.disconnect()

    with pytest.raises(TransientStoreError):
        await chat.send("Ann", "hello")


async def test_same_timestamp_orders_by_key(store: MemoryStore) -> None:
    chat = ChatLog(store, ROOM)

    await chat.apply_snapshot(
        {
            "-b": {"user": "Bob", "text": "second", "timestamp": 5},
            "-a": {"user": "Ann", "text": "first", "timestamp": 5},
            "-c": {"text": "no sender"},
        }
    )

    assert [message.text for message in chat.messages] == ["first", "second"]
