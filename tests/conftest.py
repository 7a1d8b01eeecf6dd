"""Shared pytest fixtures for watch party tests."""

from __future__ import annotations

from typing import Any, AsyncIterator

import pytest

from watchparty.config import Settings
from watchparty.monitoring.registry import registry
from watchparty.playback import NativeState
from watchparty.realtime import MemoryStore, MemoryTree


class ManualClock:
    """Wall clock replacement advanced explicitly by tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWidget:
    """Video widget recording every command it receives."""

    def __init__(self, state: NativeState = NativeState.UNSTARTED) -> None:
        self.commands: list[tuple[Any, ...]] = []
        self.content_id: str | None = None
        self.position = 0.0
        self.length = 600.0
        self.state = state
        self.fail_on: set[str] = set()

    def _record(self, name: str, *args: Any) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")
        self.commands.append((name, *args))

    def load(self, content_id: str, start_seconds: float) -> None:
        self._record("load", content_id, start_seconds)
        self.content_id = content_id
        self.position = start_seconds
        self.state = NativeState.BUFFERING

    def play(self) -> None:
        self._record("play")
        self.state = NativeState.PLAYING

    def pause(self) -> None:
        self._record("pause")
        self.state = NativeState.PAUSED

    def seek(self, seconds: float) -> None:
        self._record("seek", seconds)
        self.position = seconds

    def current_position(self) -> float:
        return self.position

    def duration(self) -> float:
        return self.length

    def native_state(self) -> NativeState:
        return self.state

    def names(self) -> list[str]:
        return [command[0] for command in self.commands]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    registry.reset()
    yield
    registry.reset()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def settings() -> Settings:
    """Settings with short windows so throttled paths finish quickly."""

    return Settings(
        _env_file=None,
        playback_throttle_seconds=0.05,
        position_report_interval_seconds=0.05,
        reaper_interval_seconds=0.05,
        room_timeout_seconds=7200,
    )


@pytest.fixture()
def tree() -> MemoryTree:
    return MemoryTree()


@pytest.fixture()
async def store(tree: MemoryTree) -> AsyncIterator[MemoryStore]:
    connection = MemoryStore(tree, client_id="alice")
    await connection.connect()
    yield connection
    await connection.close()


@pytest.fixture()
async def other_store(tree: MemoryTree) -> AsyncIterator[MemoryStore]:
    connection = MemoryStore(tree, client_id="bob")
    await connection.connect()
    yield connection
    await connection.close()


@pytest.fixture()
def widget() -> FakeWidget:
    return FakeWidget()
