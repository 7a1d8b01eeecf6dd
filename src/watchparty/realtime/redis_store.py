"""Realtime store backed by Redis hashes and pub/sub change notifications."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, TYPE_CHECKING

import redis.asyncio as redis_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError, WatchError

from watchparty.errors import TransientStoreError
from watchparty.monitoring.metrics import store_errors_total, store_recoveries_total

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

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any


logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass(slots=True)
class RedisStoreConfig:
    """Configuration used for wiring the Redis store adapter."""

    url: str
    prefix: str = "watchparty"
    lease_seconds: float = 30.0
    recovery_base_delay: float = 0.5
    recovery_max_delay: float = 30.0
    write_attempts: int = 16
    client_id: str | None = None


Change = tuple[tuple[str, ...], Any]
StagedCommand = tuple[str, tuple[Any, ...], dict[str, Any]]


def flatten(segments: tuple[str, ...], value: Any) -> dict[str, str]:
    """Flatten a value into ``{leaf path: json}`` fields."""

    normalised = normalise_value(value)
    fields: dict[str, str] = {}

    def visit(prefix: tuple[str, ...], node: Any) -> None:
        if isinstance(node, dict):
            for key, child in node.items():
                visit(prefix + (key,), child)
        elif node is not None:
            fields["/".join(prefix)] = json.dumps(node)

    visit(segments, normalised)
    return fields


def unflatten(fields: Mapping[str, str], segments: tuple[str, ...]) -> Any | None:
    """Rebuild the value at ``segments`` from flattened leaf fields."""

    result: dict[str, Any] = {}
    depth = len(segments)
    for field_path, raw in fields.items():
        field_segments = tuple(field_path.split("/"))
        if field_segments[:depth] != segments:
            continue
        try:
            value = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Discarded malformed leaf", extra={"field": field_path})
            continue
        relative = field_segments[depth:]
        if not relative:
            return value
        node = result
        for segment in relative[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[relative[-1]] = value
    return result or None


class RedisStore:
    """Realtime store shared by every client pointed at the same Redis.

    Leaves are stored in one hash per room (``{prefix}:tree:rooms/{code}``);
    every mutation is applied in a single ``MULTI`` block and then announced
    on ``{prefix}.changes`` so subscribers re-read the paths they watch.
    Disconnect hooks live in a per-client set guarded by a liveness lease
    that a heartbeat keeps fresh; :meth:`expire_disconnected` runs the hooks
    of clients whose lease lapsed.
    """

    backend = "redis"

    def __init__(self, config: RedisStoreConfig) -> None:
        self._config = config
        self._client_id = config.client_id or secrets.token_hex(8)
        self._redis: RedisClient | None = None
        self._pubsub: Any | None = None
        self._reader_task: asyncio.Task[Any] | None = None
        self._heartbeat_task: asyncio.Task[Any] | None = None
        self._recovery_task: asyncio.Task[Any] | None = None
        self._recovery_lock = asyncio.Lock()
        self._connected = False
        self._closing = False
        self._warning_logged = False
        self._dispatcher = SnapshotDispatcher(f"redis-{self._client_id}")
        self._generate_key = PushKeyGenerator()

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------
    def _prefix(self) -> str:
        return self._config.prefix.rstrip(":.")

    def _tree_key(self, shard: str) -> str:
        return f"{self._prefix()}:tree:{shard}"

    def _tree_pattern(self, segments: tuple[str, ...]) -> str:
        if segments:
            return f"{self._prefix()}:tree:{segments[0]}/*"
        return f"{self._prefix()}:tree:*"

    @property
    def _changes_channel(self) -> str:
        return f"{self._prefix()}.changes"

    def _hooks_key(self, client_id: str) -> str:
        return f"{self._prefix()}:ondisconnect:{client_id}"

    def _lease_key(self, client_id: str) -> str:
        return f"{self._prefix()}:lease:{client_id}"

    @staticmethod
    def _shard(segments: tuple[str, ...]) -> str | None:
        if len(segments) < 2:
            return None
        return "/".join(segments[:2])

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._connected:
            return
        self._closing = False
        await self._open()
        self._set_connected(True)
        for watch in list(self._dispatcher.watches):
            if watch.path != CONNECTED_PATH:
                await self._refresh_watch(watch)

    async def _open(self) -> None:
        client = redis_asyncio.from_url(
            self._config.url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
            pubsub = client.pubsub()
            await pubsub.subscribe(self._changes_channel)
            await client.set(
                self._lease_key(self._client_id),
                "1",
                px=max(int(self._config.lease_seconds * 1000), 1),
            )
        except _REDIS_ERRORS as exc:
            logger.exception("Failed to connect to Redis realtime store")
            with contextlib.suppress(Exception):
                await client.aclose()
            raise TransientStoreError("Redis store is unavailable") from exc
        self._redis = client
        self._pubsub = pubsub
        self._reader_task = asyncio.create_task(self._reader(pubsub), name="watchparty-redis-reader")
        self._reader_task.add_done_callback(self._on_reader_done)
        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="watchparty-redis-lease")

    async def _shutdown_connection(self) -> None:
        for attr in ("_heartbeat_task", "_reader_task"):
            task: asyncio.Task[Any] | None = getattr(self, attr)
            setattr(self, attr, None)
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(self._changes_channel)
            with contextlib.suppress(Exception):
                await pubsub.aclose()
        client, self._redis = self._redis, None
        if client is not None:
            with contextlib.suppress(Exception):
                await client.aclose()

    async def close(self) -> None:
        self._closing = True
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None and self._connected:
            try:
                await self._run_hooks(self._client_id)
                await self._redis.delete(self._lease_key(self._client_id))
            except (TransientStoreError, *_REDIS_ERRORS):
                logger.warning(
                    "Could not run disconnect hooks on close; the lease will expire instead",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
        self._connected = False
        await self._shutdown_connection()
        await self._dispatcher.stop()

    def _set_connected(self, connected: bool) -> None:
        self._connected = connected
        for watch in list(self._dispatcher.watches):
            if watch.path == CONNECTED_PATH:
                self._dispatcher.offer(watch, connected)

    def _on_reader_done(self, task: asyncio.Task[Any]) -> None:
        if self._closing or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Redis change reader stopped due to error; scheduling recovery",
                exc_info=exc,
            )
        else:
            logger.warning("Redis change reader exited unexpectedly; scheduling recovery")
        self._mark_offline("reader_stopped")

    def _mark_offline(self, reason: str) -> None:
        if self._closing:
            return
        if self._connected:
            self._set_connected(False)
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis store recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recovery_runner(reason), name="watchparty-redis-recovery"
        )

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while not self._closing:
            delay = min(
                self._config.recovery_base_delay * (2**attempt),
                self._config.recovery_max_delay,
            )
            if delay:
                await asyncio.sleep(delay)
            try:
                async with self._recovery_lock:
                    await self._shutdown_connection()
                    await self._open()
            except Exception:
                attempt += 1
                logger.warning(
                    "Redis store recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                continue
            break
        self._recovery_task = None
        if self._closing:
            return
        store_recoveries_total.labels("redis", reason).inc()
        logger.info(
            "Redis store recovered",
            extra={"reason": reason, "subscriptions": len(self._dispatcher.watches)},
        )
        self._set_connected(True)
        for watch in list(self._dispatcher.watches):
            if watch.path == CONNECTED_PATH:
                continue
            try:
                await self._refresh_watch(watch)
            except _REDIS_ERRORS:
                logger.warning("Failed to refresh subscription after recovery", extra={"path": watch.path})

    async def _heartbeat(self) -> None:
        interval = max(self._config.lease_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                await self._refresh_lease()
            except _REDIS_ERRORS:
                logger.warning(
                    "Failed to refresh Redis liveness lease",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._mark_offline("heartbeat_failed")
                return

    async def _refresh_lease(self) -> None:
        if self._redis is None:
            return
        await self._redis.set(
            self._lease_key(self._client_id),
            "1",
            px=max(int(self._config.lease_seconds * 1000), 1),
        )

    async def _reader(self, pubsub: Any) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            raw = message.get("data")
            if not isinstance(raw, str):
                continue
            try:
                payload = json.loads(raw)
                segments = split_path(str(payload["path"]))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("Discarded malformed change notification", extra={"channel": self._changes_channel})
                continue
            for watch in list(self._dispatcher.watches):
                if watch.path == CONNECTED_PATH or not paths_overlap(watch.segments, segments):
                    continue
                await self._refresh_watch(watch)

    async def _refresh_watch(self, watch: Watch) -> None:
        if not watch.subscription.active:
            return
        value = await self._read_segments(watch.segments)
        self._dispatcher.offer(watch, value)

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------
    def _client(self, operation: str) -> RedisClient:
        if self._redis is None or not self._connected:
            store_errors_total.labels(operation).inc()
            raise TransientStoreError(f"Redis store is offline ({operation})")
        return self._redis

    def _failed(self, operation: str, exc: BaseException) -> TransientStoreError:
        store_errors_total.labels(operation).inc()
        if not self._warning_logged:
            logger.warning(
                "Redis store operation %s failed",
                operation,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._warning_logged = True
        if isinstance(exc, (RedisConnectionError, ConnectionError, OSError)):
            self._mark_offline(f"{operation}_failed")
        return TransientStoreError(f"Redis store is unavailable ({operation})")

    async def _read_segments(self, segments: tuple[str, ...]) -> Any | None:
        client = self._redis
        if client is None:
            raise TransientStoreError("Redis store is offline (read)")
        shard = self._shard(segments)
        if shard is not None:
            fields = await client.hgetall(self._tree_key(shard))
            return unflatten(fields, segments)
        combined: dict[str, str] = {}
        async for key in client.scan_iter(match=self._tree_pattern(segments)):
            combined.update(await client.hgetall(key))
        return unflatten(combined, segments)

    async def _apply(self, operation: str, changes: list[Change]) -> None:
        client = self._client(operation)
        try:
            for _ in range(max(self._config.write_attempts, 1)):
                try:
                    await self._transact(client, changes)
                    break
                except WatchError:
                    logger.debug(
                        "Concurrent change to a replaced record; retrying",
                        extra={"operation": operation},
                    )
            else:
                store_errors_total.labels(operation).inc()
                raise TransientStoreError(f"Redis store write kept conflicting ({operation})")
            for segments, _ in changes:
                await client.publish(
                    self._changes_channel,
                    json.dumps({"path": "/".join(segments), "origin": self._client_id}),
                )
        except _REDIS_ERRORS as exc:
            raise self._failed(operation, exc) from exc
        self._warning_logged = False

    async def _transact(self, client: RedisClient, changes: list[Change]) -> None:
        """Apply ``changes`` in one ``MULTI`` block.

        Replacing a value below room level deletes the leaves it read from the
        room hash, so that hash is watched and the block aborts with
        ``WatchError`` if another client changed it in between.
        """

        watched = sorted(
            {self._tree_key("/".join(segments[:2])) for segments, _ in changes if len(segments) > 2}
        )
        async with client.pipeline(transaction=True) as pipe:
            if watched:
                await pipe.watch(*watched)
            staged: list[StagedCommand] = []
            for segments, value in changes:
                staged.extend(await self._stage(client, pipe, segments, value))
            if watched:
                pipe.multi()
            for command, args, kwargs in staged:
                getattr(pipe, command)(*args, **kwargs)
            await pipe.execute()

    async def _stage(
        self, client: RedisClient, pipe: Any, segments: tuple[str, ...], value: Any
    ) -> list[StagedCommand]:
        shard = self._shard(segments)
        fields = flatten(segments, value)
        staged: list[StagedCommand] = []
        if shard is None:
            async for key in client.scan_iter(match=self._tree_pattern(segments)):
                staged.append(("delete", (key,), {}))
        elif len(segments) == 2:
            staged.append(("delete", (self._tree_key(shard),), {}))
        else:
            # Read through the watching pipeline so the field list stays current.
            existing = await pipe.hkeys(self._tree_key(shard))
            path = "/".join(segments)
            stale = [
                name
                for name in existing
                if name == path or name.startswith(path + "/") or path.startswith(name + "/")
            ]
            if stale:
                staged.append(("hdel", (self._tree_key(shard), *stale), {}))
        grouped: dict[str, dict[str, str]] = defaultdict(dict)
        for name, encoded in fields.items():
            field_shard = self._shard(tuple(name.split("/")))
            if field_shard is None:
                # Scalars directly under the root level are not addressable per room.
                raise ValueError(f"Cannot store a leaf at '{name}'")
            grouped[field_shard][name] = encoded
        for field_shard, mapping in grouped.items():
            staged.append(("hset", (self._tree_key(field_shard),), {"mapping": mapping}))
        return staged

    async def read(self, path: str) -> Any | None:
        self._client("read")
        try:
            return await self._read_segments(split_path(path))
        except _REDIS_ERRORS as exc:
            raise self._failed("read", exc) from exc

    async def write(self, path: str, value: Any) -> None:
        await self._apply("write", [(split_path(path), value)])

    async def patch(self, path: str, fields: Mapping[str, Any]) -> None:
        base = split_path(path)
        changes = [(base + split_path(str(key)), value) for key, value in fields.items()]
        if changes:
            await self._apply("patch", changes)

    async def append(self, path: str, value: Any) -> str:
        key = self._generate_key()
        await self._apply("append", [(split_path(join_path(path, key)), value)])
        return key

    async def delete(self, path: str) -> None:
        await self._apply("delete", [(split_path(path), None)])

    # ------------------------------------------------------------------
    # Subscriptions and disconnect hooks
    # ------------------------------------------------------------------
    async def subscribe(self, path: str, handler: SnapshotHandler) -> StoreSubscription:
        if path != CONNECTED_PATH:
            self._client("subscribe")

        async def cleanup() -> None:
            return None

        watch = self._dispatcher.add(path, handler, cleanup)
        if path == CONNECTED_PATH:
            self._dispatcher.offer(watch, self._connected)
        else:
            try:
                await self._refresh_watch(watch)
            except _REDIS_ERRORS as exc:
                await watch.subscription.close()
                raise self._failed("subscribe", exc) from exc
        await self._dispatcher.settle(watch)
        return watch.subscription

    async def on_disconnect_delete(self, path: str) -> None:
        client = self._client("on_disconnect")
        try:
            await client.sadd(self._hooks_key(self._client_id), "/".join(split_path(path)))
            await self._refresh_lease()
        except _REDIS_ERRORS as exc:
            raise self._failed("on_disconnect", exc) from exc

    async def cancel_on_disconnect(self, path: str) -> None:
        client = self._client("on_disconnect")
        try:
            await client.srem(self._hooks_key(self._client_id), "/".join(split_path(path)))
        except _REDIS_ERRORS as exc:
            raise self._failed("on_disconnect", exc) from exc

    async def _run_hooks(self, client_id: str) -> int:
        client = self._client("on_disconnect")
        paths = await client.smembers(self._hooks_key(client_id))
        if paths:
            await self._apply("on_disconnect", [(split_path(path), None) for path in sorted(paths)])
        await client.delete(self._hooks_key(client_id))
        return len(paths)

    async def expire_disconnected(self) -> int:
        """Run the disconnect hooks of every client whose lease has lapsed."""

        client = self._client("expire")
        expired = 0
        try:
            pattern = self._hooks_key("*")
            keys: Iterable[str] = [key async for key in client.scan_iter(match=pattern)]
            for key in keys:
                owner = key.rsplit(":", 1)[-1]
                if owner == self._client_id or await client.exists(self._lease_key(owner)):
                    continue
                removed = await self._run_hooks(owner)
                logger.info(
                    "Expired disconnect hooks of lost client",
                    extra={"client_id": owner, "paths": removed},
                )
                expired += 1
        except _REDIS_ERRORS as exc:
            raise self._failed("expire", exc) from exc
        return expired


__all__ = ["RedisStore", "RedisStoreConfig", "flatten", "unflatten"]
