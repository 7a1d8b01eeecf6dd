"""In-process realtime store shared by any number of client connections."""

from __future__ import annotations

import copy
import logging
import secrets
from typing import Any, Mapping

from watchparty.errors import TransientStoreError
from watchparty.monitoring.metrics import store_errors_total

from .keys import PushKeyGenerator
from .store import (
    CONNECTED_PATH,
    SnapshotDispatcher,
    SnapshotHandler,
    StoreSubscription,
    Watch,
    join_path,
    normalise_value,
    paths_overlap,
    split_path,
)

logger = logging.getLogger(__name__)


class MemoryTree:
    """The shared tree every :class:`MemoryStore` connection reads and writes."""

    def __init__(self) -> None:
        self._root: dict[str, Any] = {}
        self._connections: list[MemoryStore] = []

    def attach(self, connection: "MemoryStore") -> None:
        if connection not in self._connections:
            self._connections.append(connection)

    def detach(self, connection: "MemoryStore") -> None:
        if connection in self._connections:
            self._connections.remove(connection)

    def get(self, segments: tuple[str, ...]) -> Any | None:
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        if isinstance(node, dict) and not node:
            return None
        return copy.deepcopy(node)

    def apply(self, changes: list[tuple[tuple[str, ...], Any]]) -> None:
        """Apply every change, then notify connections once per changed path."""

        for segments, value in changes:
            self._set(segments, normalise_value(value))
        for segments, _ in changes:
            for connection in list(self._connections):
                connection._on_tree_change(segments)

    def _set(self, segments: tuple[str, ...], value: Any) -> None:
        if not segments:
            self._root = dict(value) if isinstance(value, dict) else {}
            return
        if value is None:
            self._remove(segments)
            return
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[segments[-1]] = value

    def _remove(self, segments: tuple[str, ...]) -> None:
        trail: list[tuple[dict[str, Any], str]] = []
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return
            trail.append((node, segment))
            node = node[segment]
        parent, key = trail.pop()
        parent.pop(key, None)
        # Empty parents disappear, as in the hosted store.
        while trail and not parent:
            parent, key = trail.pop()
            parent.pop(key, None)


class MemoryStore:
    """One client's connection to a :class:`MemoryTree`.

    Disconnect hooks are one-shot: :meth:`disconnect` executes them against
    the tree on behalf of the lost client and forgets them, so they must be
    armed again for the next connection.
    """

    backend = "memory"

    def __init__(self, tree: MemoryTree | None = None, *, client_id: str | None = None) -> None:
        self._tree = tree if tree is not None else MemoryTree()
        self._client_id = client_id or secrets.token_hex(8)
        self._connected = False
        self._closed = False
        self._disconnect_paths: list[tuple[str, ...]] = []
        self._dispatcher = SnapshotDispatcher(f"memory-{self._client_id}")
        self._generate_key = PushKeyGenerator()

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def tree(self) -> MemoryTree:
        return self._tree

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._connected:
            return
        self._closed = False
        self._connected = True
        self._tree.attach(self)
        for watch in list(self._dispatcher.watches):
            self._deliver(watch)

    async def disconnect(self) -> None:
        """Drop the connection the way a network failure would."""

        if not self._connected:
            return
        self._connected = False
        self._tree.detach(self)
        hooks, self._disconnect_paths = self._disconnect_paths, []
        if hooks:
            logger.debug(
                "Running disconnect hooks", extra={"client_id": self._client_id, "paths": len(hooks)}
            )
            self._tree.apply([(segments, None) for segments in hooks])
        for watch in list(self._dispatcher.watches):
            if watch.path == CONNECTED_PATH:
                self._dispatcher.offer(watch, False)

    async def close(self) -> None:
        if self._closed:
            return
        await self.disconnect()
        await self._dispatcher.stop()
        self._closed = True

    async def flush(self) -> None:
        """Wait until every pending snapshot has been delivered."""

        await self._dispatcher.drain()

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------
    def _ensure_connected(self, operation: str) -> None:
        if not self._connected:
            store_errors_total.labels(operation).inc()
            raise TransientStoreError(f"Store connection is offline ({operation})")

    async def read(self, path: str) -> Any | None:
        self._ensure_connected("read")
        return self._tree.get(split_path(path))

    async def write(self, path: str, value: Any) -> None:
        self._ensure_connected("write")
        self._tree.apply([(split_path(path), value)])

    async def patch(self, path: str, fields: Mapping[str, Any]) -> None:
        self._ensure_connected("patch")
        base = split_path(path)
        changes = [(base + split_path(str(key)), value) for key, value in fields.items()]
        if changes:
            self._tree.apply(changes)

    async def append(self, path: str, value: Any) -> str:
        self._ensure_connected("append")
        key = self._generate_key()
        self._tree.apply([(split_path(join_path(path, key)), value)])
        return key

    async def delete(self, path: str) -> None:
        self._ensure_connected("delete")
        self._tree.apply([(split_path(path), None)])

    # ------------------------------------------------------------------
    # Subscriptions and disconnect hooks
    # ------------------------------------------------------------------
    async def subscribe(self, path: str, handler: SnapshotHandler) -> StoreSubscription:
        if path != CONNECTED_PATH:
            self._ensure_connected("subscribe")

        async def cleanup() -> None:
            return None

        watch = self._dispatcher.add(path, handler, cleanup)
        self._deliver(watch)
        await self._dispatcher.settle(watch)
        return watch.subscription

    def _deliver(self, watch: Watch) -> None:
        if watch.path == CONNECTED_PATH:
            self._dispatcher.offer(watch, self._connected)
            return
        if self._connected:
            self._dispatcher.offer(watch, self._tree.get(watch.segments))

    def _on_tree_change(self, segments: tuple[str, ...]) -> None:
        if not self._connected:
            return
        for watch in list(self._dispatcher.watches):
            if watch.path == CONNECTED_PATH or not paths_overlap(watch.segments, segments):
                continue
            self._dispatcher.offer(watch, self._tree.get(watch.segments))

    async def on_disconnect_delete(self, path: str) -> None:
        self._ensure_connected("on_disconnect")
        segments = split_path(path)
        if segments not in self._disconnect_paths:
            self._disconnect_paths.append(segments)

    async def cancel_on_disconnect(self, path: str) -> None:
        segments = split_path(path)
        if segments in self._disconnect_paths:
            self._disconnect_paths.remove(segments)

    async def expire_disconnected(self) -> int:
        return 0


__all__ = ["MemoryStore", "MemoryTree"]
