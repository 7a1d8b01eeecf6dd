from __future__ import annotations

import asyncio
from fnmatch import fnmatchcase
from types import SimpleNamespace
from typing import Any, Awaitable, Callable

import pytest
from redis.exceptions import WatchError

from watchparty.errors import TransientStoreError
from watchparty.monitoring.metrics import store_errors_total, store_recoveries_total
from watchparty.realtime import CONNECTED_PATH, RedisStore, RedisStoreConfig
from watchparty.realtime.redis_store import flatten, unflatten

pytestmark = pytest.mark.anyio

MEMBER = "rooms/ABC123/users/m1"
STATE = "rooms/ABC123/state"


class FakeServer:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.strings: dict[str, str] = {}
        self.channels: dict[str, set[FakePubSub]] = {}
        self.versions: dict[str, int] = {}
        self.before_execute: Callable[[], Awaitable[None]] | None = None

    def keys(self) -> list[str]:
        return sorted({*self.hashes, *self.sets, *self.strings})

    def touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1


class FakePubSub:
    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        self._client.check()
        self._channels.add(channel)
        self._client.server.channels.setdefault(channel, set()).add(self)

    async def unsubscribe(self, channel: str) -> None:
        self._channels.discard(channel)
        self._client.server.channels.get(channel, set()).discard(self)

    async def aclose(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakePipeline:
    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self._watched: dict[str, int] = {}

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._ops.clear()
        self._watched = {}

    async def watch(self, *keys: str) -> None:
        self._client.check()
        self._watched = {key: self._client.server.versions.get(key, 0) for key in keys}

    async def hkeys(self, key: str) -> list[str]:
        return await self._client.hkeys(key)

    def multi(self) -> None:
        self._ops.clear()

    def delete(self, *keys: str) -> FakePipeline:
        self._ops.append(("delete", keys, {}))
        return self

    def hdel(self, key: str, *fields: str) -> FakePipeline:
        self._ops.append(("hdel", (key, *fields), {}))
        return self

    def hset(self, key: str, mapping: dict[str, str]) -> FakePipeline:
        self._ops.append(("hset", (key,), {"mapping": mapping}))
        return self

    async def execute(self) -> list[Any]:
        self._client.check()
        server = self._client.server
        hook, server.before_execute = server.before_execute, None
        if hook is not None:
            await hook()
        ops, self._ops = self._ops, []
        watched, self._watched = self._watched, {}
        if any(server.versions.get(key, 0) != version for key, version in watched.items()):
            raise WatchError("Watched variable changed.")
        return [await getattr(self._client, name)(*args, **kwargs) for name, args, kwargs in ops]


class FakeRedis:
    def __init__(self, server: FakeServer, *, online: bool = True) -> None:
        self.server = server
        self.online = online
        self._pubsubs: list[FakePubSub] = []

    def check(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def ping(self) -> bool:
        self.check()
        return True

    async def hgetall(self, key: str) -> dict[str, str]:
        self.check()
        return dict(self.server.hashes.get(key, {}))

    async def hkeys(self, key: str) -> list[str]:
        self.check()
        return list(self.server.hashes.get(key, {}))

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.check()
        self.server.touch(key)
        self.server.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def hdel(self, key: str, *fields: str) -> int:
        self.check()
        self.server.touch(key)
        values = self.server.hashes.get(key, {})
        removed = sum(1 for name in fields if values.pop(name, None) is not None)
        if key in self.server.hashes and not values:
            del self.server.hashes[key]
        return removed

    async def scan_iter(self, match: str = "*"):
        self.check()
        for key in self.server.keys():
            if fnmatchcase(key, match):
                yield key

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        self.check()
        self.server.touch(key)
        self.server.strings[key] = value
        return True

    async def exists(self, *keys: str) -> int:
        self.check()
        return sum(1 for key in keys if key in self.server.keys())

    async def delete(self, *keys: str) -> int:
        self.check()
        removed = 0
        for key in keys:
            self.server.touch(key)
            for storage in (self.server.hashes, self.server.sets, self.server.strings):
                if storage.pop(key, None) is not None:
                    removed += 1
        return removed

    async def sadd(self, key: str, *values: str) -> int:
        self.check()
        self.server.touch(key)
        self.server.sets.setdefault(key, set()).update(values)
        return len(values)

    async def srem(self, key: str, *values: str) -> int:
        self.check()
        self.server.touch(key)
        members = self.server.sets.get(key, set())
        members.difference_update(values)
        if not members:
            self.server.sets.pop(key, None)
        return len(values)

    async def smembers(self, key: str) -> set[str]:
        self.check()
        return set(self.server.sets.get(key, set()))

    async def publish(self, channel: str, payload: str) -> int:
        self.check()
        subscribers = list(self.server.channels.get(channel, set()))
        for pubsub in subscribers:
            pubsub.push({"type": "message", "data": payload})
        return len(subscribers)

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self._pubsubs.append(pubsub)
        return pubsub

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.online = False

    def fail(self) -> None:
        self.online = False
        for pubsub in self._pubsubs:
            pubsub.push(None)


class FakeRedisFactory:
    def __init__(self) -> None:
        self.server = FakeServer()
        self.instances: list[FakeRedis] = []
        self.online = True

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis(self.server, online=self.online)
        self.instances.append(client)
        return client


@pytest.fixture()
def factory(monkeypatch: pytest.MonkeyPatch) -> FakeRedisFactory:
    fake = FakeRedisFactory()
    monkeypatch.setattr(
        "watchparty.realtime.redis_store.redis_asyncio",
        SimpleNamespace(from_url=fake.from_url),
    )
    return fake


def make_store(client_id: str) -> RedisStore:
    return RedisStore(
        RedisStoreConfig(
            url="redis://fake",
            client_id=client_id,
            recovery_base_delay=0.01,
            recovery_max_delay=0.05,
        )
    )


async def wait_until(predicate: Callable[[], bool]) -> None:
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def test_flatten_and_unflatten_address_leaves_by_path() -> None:
    fields = flatten(("rooms", "ABC123", "users"), {"m1": {"name": "Ann", "isSpeaking": False}})

    assert fields == {
        "rooms/ABC123/users/m1/name": '"Ann"',
        "rooms/ABC123/users/m1/isSpeaking": "false",
    }
    assert unflatten(fields, ("rooms", "ABC123", "users", "m1", "name")) == "Ann"
    assert unflatten(fields, ("rooms", "ABC123", "chat")) is None


async def test_writes_are_visible_to_other_clients_and_subscribers(factory) -> None:
    writer, reader = make_store("a"), make_store("b")
    await writer.connect()
    await reader.connect()
    received: list[Any] = []

    async def handler(value: Any) -> None:
        received.append(value)

    await reader.subscribe("rooms/ABC123/users", handler)
    await writer.write(MEMBER, {"name": "Ann", "isSpeaking": False, "joinedAt": 5})
    await writer.patch(MEMBER, {"isSpeaking": True})

    expected = {"name": "Ann", "isSpeaking": True, "joinedAt": 5}
    assert await reader.read(MEMBER) == expected
    await wait_until(lambda: bool(received) and received[-1] == {"m1": expected})
    assert received[0] is None

    await writer.close()
    await reader.close()


async def test_append_and_delete(factory) -> None:
    store = make_store("a")
    await store.connect()

    keys = [await store.append("rooms/ABC123/chat", {"text": str(index)}) for index in range(3)]
    chat = await store.read("rooms/ABC123/chat")
    assert sorted(chat) == keys
    assert [chat[key]["text"] for key in keys] == ["0", "1", "2"]

    await store.delete("rooms/ABC123")
    assert await store.read("rooms") is None
    await store.close()


async def test_graceful_close_runs_disconnect_hooks(factory) -> None:
    owner, observer = make_store("a"), make_store("b")
    await owner.connect()
    await observer.connect()
    await owner.write(MEMBER, {"name": "Ann"})
    await owner.on_disconnect_delete(MEMBER)

    await owner.close()

    assert await observer.read(MEMBER) is None
    await observer.close()


async def test_hooks_of_clients_with_lapsed_lease_are_expired(factory) -> None:
    lost, reaper = make_store("lost"), make_store("reaper")
    await lost.connect()
    await reaper.connect()
    await lost.write(MEMBER, {"name": "Ann"})
    await lost.on_disconnect_delete(MEMBER)
    assert await reaper.expire_disconnected() == 0

    factory.server.strings.pop("watchparty:lease:lost")

    assert await reaper.expire_disconnected() == 1
    assert await reaper.read(MEMBER) is None
    await lost.close()
    await reaper.close()


async def test_reader_loss_recovers_and_toggles_connectivity(factory) -> None:
    store = make_store("a")
    await store.connect()
    signal: list[Any] = []

    async def on_signal(value: Any) -> None:
        signal.append(value)

    await store.subscribe(CONNECTED_PATH, on_signal)
    await wait_until(lambda: signal == [True])

    factory.instances[0].fail()

    await wait_until(lambda: signal == [True, False, True])
    assert store_recoveries_total.value("redis", "reader_stopped") == 1
    assert len(factory.instances) == 2

    await store.write(MEMBER, {"name": "Ann"})
    assert await store.read(MEMBER) == {"name": "Ann"}
    await store.close()


async def test_operations_fail_while_offline(factory) -> None:
    store = make_store("a")

    with pytest.raises(TransientStoreError):
        await store.read(MEMBER)
    assert store_errors_total.value("read") == 1

    factory.online = False
    with pytest.raises(TransientStoreError):
        await store.connect()
    assert not store.connected


async def test_replace_retries_when_the_record_changes_underneath(factory) -> None:
    first, second = make_store("a"), make_store("b")
    await first.connect()
    await second.connect()
    await first.write(STATE, {"isPlaying": True, "currentTime": 1, "lastUpdated": 1})

    async def competing_select() -> None:
        await first.write(
            STATE, {"currentVideo": "a" * 11, "isPlaying": True, "currentTime": 0, "lastUpdated": 2}
        )

    factory.server.before_execute = competing_select
    await second.write(STATE, {"isPlaying": False, "currentTime": 0, "lastUpdated": 3})

    assert await first.read(STATE) == {"isPlaying": False, "currentTime": 0, "lastUpdated": 3}
    await first.close()
    await second.close()
