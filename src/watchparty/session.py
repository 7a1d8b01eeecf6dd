"""Room sessions: join, leave, resume and the locally cached session."""

from __future__ import annotations

import json
import logging
import secrets
import string
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Protocol

from pydantic import ValidationError as PydanticValidationError

from .chat import ChatLog
from .config import Settings
from .errors import RoomNotFound, TransientStoreError
from .media_queue import QueueManager
from .models import ChatMessage, ContentSummary, Member, PlaybackState, QueueEntry, SavedSession
from .monitoring.metrics import room_sessions_active
from .playback import PlaybackSynchronizer, SyncOptions, VideoWidget
from .presence import PresenceTracker
from .realtime.paths import chat_path, members_path, playback_path, queue_path, room_path
from .realtime.store import RealtimeStore, StoreSubscription
from .validation import validate_display_name, validate_join

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
ROOM_CODE_LENGTH = 6


class CacheBackend(Protocol):
    """Protocol describing the local key/value cache we rely on."""

    def set(self, key: str, value: str) -> None:
        """Store a value under ``key``."""

    def get(self, key: str) -> str | None:
        """Retrieve a cached value if present."""

    def delete(self, key: str) -> None:
        """Remove a cached entry, ignoring missing values."""


class _InMemoryCache:
    """Process local cache used when no cache file is configured."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._store[key] = value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._store.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class _FileCache:
    """JSON object on disk adhering to :class:`CacheBackend`."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable session cache", extra={"path": str(self._path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data), encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, str) else None

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)


def build_cache(settings: Settings) -> CacheBackend:
    """Return the configured cache backend, file backed when a path is set."""

    if settings.session_cache_path is not None:
        return _FileCache(settings.session_cache_path)
    return _InMemoryCache()


class SessionStore:
    """The last joined session, remembered with an absolute expiry."""

    def __init__(
        self,
        cache: CacheBackend,
        *,
        key: str = "watchparty_session",
        expiry_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._key = key
        self._expiry_seconds = expiry_seconds
        self._clock = clock

    def save(self, room_code: str, display_name: str, member_id: str) -> SavedSession:
        session = SavedSession(
            room_code=room_code,
            display_name=display_name,
            member_id=member_id,
            expires_at=self._clock() + self._expiry_seconds,
        )
        self._cache.set(self._key, session.model_dump_json())
        return session

    def load(self) -> SavedSession | None:
        """Return the cached session, dropping it when expired or malformed."""

        raw = self._cache.get(self._key)
        if raw is None:
            return None
        try:
            session = SavedSession.model_validate_json(raw)
        except PydanticValidationError:
            logger.debug("Discarded malformed cached session")
            self._cache.delete(self._key)
            return None
        if session.expires_at <= self._clock():
            logger.debug("Discarded expired cached session", extra={"room_code": session.room_code})
            self._cache.delete(self._key)
            return None
        return session

    def clear(self) -> None:
        self._cache.delete(self._key)

    def purge_expired(self) -> bool:
        """Drop the cached session if it is no longer usable."""

        had_entry = self._cache.get(self._key) is not None
        return had_entry and self.load() is None


class RoomSession:
    """Handle for one joined room.

    Views are kept current by the room's subscriptions; actions write through
    the store and raise per action without affecting the session.
    """

    def __init__(
        self,
        store: RealtimeStore,
        room_code: str,
        member_id: str,
        display_name: str,
        *,
        presence: PresenceTracker,
        playback: PlaybackSynchronizer,
        queue: QueueManager,
        chat: ChatLog,
        on_closed: Callable[["RoomSession"], None] | None = None,
    ) -> None:
        self._store = store
        self.room_code = room_code
        self.member_id = member_id
        self.display_name = display_name
        self.presence = presence
        self.playback = playback
        self.queue = queue
        self.chat = chat
        self._subscriptions: list[StoreSubscription] = []
        self._on_closed = on_closed
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def members(self) -> list[Member]:
        return self.presence.members

    @property
    def speaking_members(self) -> list[Member]:
        return self.presence.speaking_members

    @property
    def queue_entries(self) -> list[QueueEntry]:
        return self.queue.entries

    @property
    def messages(self) -> list[ChatMessage]:
        return self.chat.messages

    @property
    def playback_state(self) -> PlaybackState:
        return self.playback.state

    @property
    def current_entry(self) -> QueueEntry | None:
        return self.queue.current_entry()

    def track(self, subscription: StoreSubscription) -> StoreSubscription:
        self._subscriptions.append(subscription)
        return subscription

    async def subscribe(self, path: str, handler: Callable[[Any], Awaitable[Any]]) -> StoreSubscription:
        async def deliver(value: Any) -> None:
            if not self._closed:
                await handler(value)

        return self.track(await self._store.subscribe(path, deliver))

    # Actions -----------------------------------------------------------
    async def send_message(self, text: str) -> ChatMessage:
        return await self.chat.send(self.display_name, text)

    async def add_to_queue(self, content: ContentSummary | Mapping[str, Any]) -> QueueEntry:
        return await self.queue.add(self.display_name, content)

    async def remove_from_queue(self, entry_id: str) -> None:
        await self.queue.remove(entry_id)

    async def clear_queue(self) -> None:
        await self.queue.clear()

    def select(self, entry_id: str) -> QueueEntry:
        return self.queue.select(entry_id)

    async def set_speaking(self, speaking: bool) -> None:
        await self.presence.set_speaking(speaking)

    def play(self) -> None:
        self.playback.play()

    def pause(self) -> None:
        self.playback.pause()

    def seek(self, position: float) -> None:
        self.playback.seek(position)

    def attach_widget(self, widget: VideoWidget) -> None:
        self.playback.attach_widget(widget)
        self.playback.start_position_reports()

    # Teardown ----------------------------------------------------------
    def detach(self) -> None:
        """Stop every callback and pending write without awaiting anything."""

        for subscription in self._subscriptions:
            subscription.detach()
        self.presence.detach()
        self.playback.close()

    async def close(self) -> None:
        """Release subscriptions and remove the member record once."""

        if self._closed:
            return
        self._closed = True
        self.detach()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()
        try:
            await self.presence.unregister()
        except TransientStoreError:
            logger.warning(
                "Could not remove member on leave; the disconnect hook will clean up",
                extra={"room_code": self.room_code, "member_id": self.member_id},
            )
        if self._on_closed is not None:
            self._on_closed(self)


class RoomSessionManager:
    """Create, join, leave and resume room sessions over one store connection."""

    def __init__(
        self,
        store: RealtimeStore,
        settings: Settings,
        session_store: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings
        self._session_store = session_store
        self._clock = clock
        self._monotonic = monotonic
        self._sessions: set[RoomSession] = set()

    @property
    def sessions(self) -> list[RoomSession]:
        return list(self._sessions)

    @staticmethod
    def new_member_id() -> str:
        return secrets.token_urlsafe(12)

    @staticmethod
    def generate_room_code() -> str:
        return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))

    async def create_room(self, display_name: str, member_id: str | None = None) -> RoomSession:
        display_name = validate_display_name(display_name)
        member_id = member_id or self.new_member_id()
        for _ in range(self._settings.room_code_attempts):
            room_code = self.generate_room_code()
            if await self._store.read(room_path(room_code)) is not None:
                logger.debug("Room code collision", extra={"room_code": room_code})
                continue
            await self._store.write(
                room_path(room_code),
                {"createdAt": int(self._clock() * 1000), "createdBy": display_name},
            )
            logger.info("Created room", extra={"room_code": room_code})
            return await self.join(room_code, member_id, display_name)
        raise TransientStoreError("Could not allocate a free room code")

    async def join(self, room_code: str, member_id: str, display_name: str) -> RoomSession:
        request = validate_join(room_code, member_id, display_name)
        room_code = request.room_code
        if await self._store.read(room_path(room_code)) is None:
            raise RoomNotFound(room_code)

        presence = PresenceTracker(self._store, room_code, clock=self._clock)
        playback = PlaybackSynchronizer(
            self._store,
            room_code,
            options=SyncOptions.from_settings(self._settings),
            clock=self._clock,
            monotonic=self._monotonic,
        )
        queue = QueueManager(self._store, room_code, playback, clock=self._clock)
        playback.on_ended = queue.handle_playback_ended
        chat = ChatLog(self._store, room_code, clock=self._clock)
        session = RoomSession(
            self._store,
            room_code,
            request.member_id,
            request.display_name,
            presence=presence,
            playback=playback,
            queue=queue,
            chat=chat,
            on_closed=self._forget,
        )

        try:
            await presence.register(request.member_id, request.display_name)
            await session.subscribe(members_path(room_code), presence.apply_snapshot)
            await session.subscribe(queue_path(room_code), queue.apply_snapshot)
            await session.subscribe(chat_path(room_code), chat.apply_snapshot)
            await session.subscribe(playback_path(room_code), playback.apply_snapshot)
        except Exception:
            await session.close()
            raise

        self._sessions.add(session)
        room_sessions_active.inc()
        self._session_store.save(room_code, request.display_name, request.member_id)
        logger.info("Joined room", extra={"room_code": room_code, "member_id": request.member_id})
        return session

    def _forget(self, session: RoomSession) -> None:
        if session in self._sessions:
            self._sessions.discard(session)
            room_sessions_active.dec()

    async def leave(self, session: RoomSession, *, forget: bool = True) -> None:
        """Leave a room; calling it again for the same session does nothing."""

        if session.closed:
            return
        await session.close()
        if forget:
            self._session_store.clear()
        logger.info("Left room", extra={"room_code": session.room_code, "member_id": session.member_id})

    async def resume(self, widget: VideoWidget | None = None) -> RoomSession | None:
        """Rejoin the cached session, if there is a valid one."""

        saved = self._session_store.load()
        if saved is None:
            return None
        try:
            session = await self.join(saved.room_code, saved.member_id, saved.display_name)
        except RoomNotFound:
            logger.info("Cached room no longer exists", extra={"room_code": saved.room_code})
            self._session_store.clear()
            return None
        if widget is not None:
            session.attach_widget(widget)
        return session

    async def close(self) -> None:
        for session in list(self._sessions):
            await self.leave(session, forget=False)


__all__ = [
    "CacheBackend",
    "RoomSession",
    "RoomSessionManager",
    "SessionStore",
    "build_cache",
]
