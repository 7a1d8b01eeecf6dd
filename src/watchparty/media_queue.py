"""Room video queue with auto-selection and auto-advance."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from .errors import ValidationError
from .models import ContentSummary, PlaybackState, QueueEntry
from .playback import PlaybackSynchronizer
from .realtime.paths import queue_entry_path, queue_path
from .realtime.store import RealtimeStore
from .validation import validate_content, validate_display_name

logger = logging.getLogger(__name__)


class QueueManager:
    """Keep the ordered queue view and drive playback from it.

    Entries are keyed by store generated push keys, so sorting by key gives
    insertion order and the same video may be queued more than once.
    """

    def __init__(
        self,
        store: RealtimeStore,
        room_code: str,
        playback: PlaybackSynchronizer,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._room_code = room_code
        self._playback = playback
        self._clock = clock
        self._entries: list[QueueEntry] = []

    @property
    def entries(self) -> list[QueueEntry]:
        return list(self._entries)

    async def apply_snapshot(self, raw: Any) -> None:
        self._entries = sorted(QueueEntry.collection(raw), key=lambda entry: entry.id)

    def current_entry(self, state: PlaybackState | None = None) -> QueueEntry | None:
        """The queue entry playback is on or about to switch to, if it is queued."""

        state = state or self._playback.target
        if state.content_id is None:
            return None
        if state.entry_id is not None:
            for entry in self._entries:
                if entry.id == state.entry_id:
                    return entry
        for entry in self._entries:
            if entry.content_id == state.content_id:
                return entry
        return None

    def _index(self, entry_id: str) -> int | None:
        for index, entry in enumerate(self._entries):
            if entry.id == entry_id:
                return index
        return None

    async def add(self, member_name: str, content: ContentSummary | Mapping[str, Any]) -> QueueEntry:
        member_name = validate_display_name(member_name)
        summary = validate_content(content)
        was_empty = not self._entries
        idle = self._playback.target.content_id is None
        payload = {
            "videoId": summary.external_id,
            "title": summary.title,
            "thumbnail": summary.thumbnail_url,
            "channel": summary.channel_name,
            "addedBy": member_name,
            "addedAt": int(self._clock() * 1000),
        }
        key = await self._store.append(queue_path(self._room_code), payload)
        entry = QueueEntry.model_validate({**payload, "id": key})
        if self._index(key) is None:
            self._entries = sorted([*self._entries, entry], key=lambda item: item.id)
        logger.debug(
            "Queued content",
            extra={"room_code": self._room_code, "entry_id": key, "content_id": summary.external_id},
        )
        if was_empty and idle:
            self._playback.select(entry.content_id, entry.id)
        return entry

    async def remove(self, entry_id: str) -> None:
        """Delete an entry; removing the current one advances playback."""

        current = self.current_entry()
        index = self._index(entry_id)
        await self._store.delete(queue_entry_path(self._room_code, entry_id))
        if index is None:
            return
        remaining = [entry for entry in self._entries if entry.id != entry_id]
        self._entries = remaining
        if current is None or current.id != entry_id:
            return
        if not remaining:
            self._playback.stop()
            return
        following = remaining[index] if index < len(remaining) else remaining[0]
        self._playback.select(following.content_id, following.id)

    async def clear(self) -> None:
        await self._store.delete(queue_path(self._room_code))
        self._entries = []
        if self._playback.target.content_id is not None:
            self._playback.stop()

    def select(self, entry_id: str) -> QueueEntry:
        index = self._index(entry_id)
        if index is None:
            raise ValidationError("entry_id", f"unknown queue entry '{entry_id}'")
        entry = self._entries[index]
        self._playback.select(entry.content_id, entry.id)
        return entry

    async def handle_playback_ended(self, state: PlaybackState) -> None:
        """Advance to the next entry, or stop at the end of the queue."""

        if not state.same_content(self._playback.state):
            return
        current = self.current_entry(state)
        index = self._index(current.id) if current is not None else None
        if index is not None and index + 1 < len(self._entries):
            following = self._entries[index + 1]
            self._playback.select(following.content_id, following.id)
            return
        logger.debug("Reached the end of the queue", extra={"room_code": self._room_code})
        self._playback.pause()


__all__ = ["QueueManager"]
