"""Store adapter contract and snapshot delivery shared by the adapters."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Always-available path whose value tracks this client's connectivity.
CONNECTED_PATH = ".info/connected"

SnapshotHandler = Callable[[Any], Awaitable[None]]


def split_path(path: str) -> tuple[str, ...]:
    """Return the segments of a slash separated store path."""

    stripped = path.strip("/")
    if not stripped:
        return ()
    segments = tuple(stripped.split("/"))
    if any(not segment for segment in segments):
        raise ValueError(f"Invalid store path '{path}'")
    return segments


def join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


def paths_overlap(first: tuple[str, ...], second: tuple[str, ...]) -> bool:
    """Whether a change at one path can alter the value at the other."""

    shortest = min(len(first), len(second))
    return first[:shortest] == second[:shortest]


def normalise_value(value: Any) -> Any:
    """Convert a value into the store's data model.

    Mappings lose ``None`` and empty children, sequences become mappings keyed
    by index and an empty mapping collapses to ``None`` (absent).
    """

    if value is None:
        return None
    if isinstance(value, Mapping):
        result: dict[str, Any] = {}
        for key, child in value.items():
            key = str(key)
            if not key or "/" in key:
                raise ValueError(f"Invalid key '{key}'")
            normalised = normalise_value(child)
            if normalised is not None:
                result[key] = normalised
        return result or None
    if isinstance(value, (list, tuple)):
        return normalise_value({str(index): child for index, child in enumerate(value)})
    if isinstance(value, (str, bool, int, float)):
        return value
    raise ValueError(f"Unsupported value type {type(value).__name__}")


class StoreSubscription:
    """Handle returned by :meth:`RealtimeStore.subscribe`."""

    def __init__(self, path: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._path = path
        self._cleanup = cleanup
        self._active = True
        self._closed = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def active(self) -> bool:
        return self._active

    def detach(self) -> None:
        """Stop delivering snapshots immediately; release happens in :meth:`close`."""

        self._active = False

    async def close(self) -> None:
        self.detach()
        if self._closed:
            return
        self._closed = True
        await self._cleanup()


@runtime_checkable
class RealtimeStore(Protocol):
    """Path addressed, subscribable key-value tree with disconnect hooks."""

    @property
    def client_id(self) -> str: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def read(self, path: str) -> Any | None: ...

    async def write(self, path: str, value: Any) -> None: ...

    async def patch(self, path: str, fields: Mapping[str, Any]) -> None: ...

    async def append(self, path: str, value: Any) -> str: ...

    async def delete(self, path: str) -> None: ...

    async def subscribe(self, path: str, handler: SnapshotHandler) -> StoreSubscription: ...

    async def on_disconnect_delete(self, path: str) -> None: ...

    async def cancel_on_disconnect(self, path: str) -> None: ...

    async def expire_disconnected(self) -> int: ...


_UNSET: Any = object()


@dataclass(slots=True, eq=False)
class Watch:
    """A subscription's path together with the last value it was given."""

    path: str
    segments: tuple[str, ...]
    handler: SnapshotHandler
    subscription: StoreSubscription
    last_value: Any = field(default=_UNSET)
    delivered: asyncio.Event = field(default_factory=asyncio.Event)


class SnapshotDispatcher:
    """Deliver snapshots to subscription handlers one at a time.

    Each handler runs to completion before the next snapshot is handed out.
    Subscribing waits for the first snapshot, so callers see the current
    value as soon as ``subscribe`` returns.
    Handler errors are logged and swallowed so the subscription keeps
    listening.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._queue: asyncio.Queue[tuple[Watch, Any]] = asyncio.Queue()
        self._task: asyncio.Task[Any] | None = None
        self.watches: list[Watch] = []

    def add(self, path: str, handler: SnapshotHandler, cleanup: Callable[[], Awaitable[None]]) -> Watch:
        watch_ref: list[Watch] = []

        async def release() -> None:
            if watch_ref and watch_ref[0] in self.watches:
                self.watches.remove(watch_ref[0])
            await cleanup()

        subscription = StoreSubscription(path, release)
        watch = Watch(path=path, segments=split_path(path), handler=handler, subscription=subscription)
        watch_ref.append(watch)
        self.watches.append(watch)
        return watch

    def offer(self, watch: Watch, value: Any, *, force: bool = False) -> None:
        if not watch.subscription.active:
            watch.delivered.set()
            return
        if not force and watch.last_value is not _UNSET and watch.last_value == value:
            return
        watch.last_value = copy.deepcopy(value)
        self._ensure_task()
        self._queue.put_nowait((watch, copy.deepcopy(value)))

    def _ensure_task(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"snapshots-{self._name}")

    async def _run(self) -> None:
        while True:
            watch, value = await self._queue.get()
            try:
                if watch.subscription.active:
                    await watch.handler(value)
            except Exception:
                logger.exception("Snapshot handler failed", extra={"path": watch.path})
            finally:
                watch.delivered.set()
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued snapshot has been handled."""

        await self._queue.join()

    async def settle(self, watch: Watch) -> None:
        """Wait until the first snapshot offered to ``watch`` has been handled."""

        if self._task is not None and self._task is asyncio.current_task():
            # Called from a handler; the snapshot is queued behind it.
            return
        await watch.delivered.wait()

    async def stop(self) -> None:
        for watch in list(self.watches):
            watch.subscription.detach()
            watch.delivered.set()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None


__all__ = [
    "CONNECTED_PATH",
    "RealtimeStore",
    "SnapshotDispatcher",
    "SnapshotHandler",
    "StoreSubscription",
    "Watch",
    "join_path",
    "normalise_value",
    "paths_overlap",
    "split_path",
]
