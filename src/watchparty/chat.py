"""Append-only room chat."""

from __future__ import annotations

import time
from typing import Any, Callable

from .models import ChatMessage
from .realtime.paths import chat_path
from .realtime.store import RealtimeStore
from .validation import validate_display_name, validate_message


class ChatLog:
    def __init__(
        self,
        store: RealtimeStore,
        room_code: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._room_code = room_code
        self._clock = clock
        self._messages: list[ChatMessage] = []

    @property
    def messages(self) -> list[ChatMessage]:
        """Messages in display order: sender timestamp, then key."""

        return list(self._messages)

    async def apply_snapshot(self, raw: Any) -> None:
        # Key order reflects arrival, not the senders' clocks.
        self._messages = sorted(
            ChatMessage.collection(raw), key=lambda message: (message.timestamp, message.id)
        )

    async def send(self, sender: str, text: str) -> ChatMessage:
        sender = validate_display_name(sender)
        text = validate_message(text)
        payload = {"user": sender, "text": text, "timestamp": int(self._clock() * 1000)}
        key = await self._store.append(chat_path(self._room_code), payload)
        return ChatMessage.model_validate({**payload, "id": key})


__all__ = ["ChatLog"]
