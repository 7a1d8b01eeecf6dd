"""Playback state synchronization between the shared record and a local player.

Every member may write the room's playback record. Readers accept an
incoming record only when its ``lastUpdated`` stamp is strictly greater than
the one they already applied; that single rule makes all members converge on
the last write. Local intent goes through a trailing throttle and is dropped
unless it changes the content, the play flag or moves the position by more
than a few seconds.

Programmatic player commands issued while converging produce native events
of their own. The synchronizer tracks them with a small state machine
(:class:`SyncPhase`) so those echoes are not mistaken for user intent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .errors import TransientStoreError, WidgetSyncError
from .models import PlaybackState
from .monitoring.metrics import playback_updates_total, widget_commands_total
from .realtime.paths import playback_path
from .realtime.store import RealtimeStore
from .throttle import IntervalGuard, TrailingThrottle

logger = logging.getLogger(__name__)


class NativeState(str, Enum):
    UNSTARTED = "unstarted"
    PLAYING = "playing"
    PAUSED = "paused"
    BUFFERING = "buffering"
    ENDED = "ended"


class VideoWidget(Protocol):
    """Remote controllable player. Commands are fire-and-forget."""

    def load(self, content_id: str, start_seconds: float) -> None: ...

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, seconds: float) -> None: ...

    def current_position(self) -> float: ...

    def duration(self) -> float: ...

    def native_state(self) -> NativeState: ...


class SyncPhase(str, Enum):
    IDLE = "idle"
    AWAITING_LOAD = "awaiting_load_confirmation"
    AWAITING_SEEK = "awaiting_seek_confirmation"
    AWAITING_TOGGLE = "awaiting_toggle_confirmation"
    SYNCED = "synced"


_AWAITING = {SyncPhase.AWAITING_LOAD, SyncPhase.AWAITING_SEEK, SyncPhase.AWAITING_TOGGLE}
_ACTIVE_STATES = {NativeState.PLAYING, NativeState.BUFFERING}
_CHANGE_FIELDS = {"content_id", "entry_id", "playing", "position"}


@dataclass(slots=True)
class SyncOptions:
    throttle_seconds: float = 0.5
    position_delta_seconds: float = 2.0
    seek_tolerance_seconds: float = 2.0
    report_interval_seconds: float = 2.0
    echo_events: int = 2
    echo_window_seconds: float = 1.5

    @classmethod
    def from_settings(cls, settings: Any) -> "SyncOptions":
        return cls(
            throttle_seconds=settings.playback_throttle_seconds,
            position_delta_seconds=settings.playback_position_delta_seconds,
            seek_tolerance_seconds=settings.seek_tolerance_seconds,
            report_interval_seconds=settings.position_report_interval_seconds,
            echo_events=settings.echo_suppression_events,
            echo_window_seconds=settings.echo_suppression_window_seconds,
        )


EndedHandler = Callable[[PlaybackState], Awaitable[None]]


class PlaybackSynchronizer:
    """Merge local player events and remote records into one playback state."""

    def __init__(
        self,
        store: RealtimeStore,
        room_code: str,
        *,
        options: SyncOptions | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._path = playback_path(room_code)
        self._options = options or SyncOptions()
        self._clock = clock
        self._monotonic = monotonic
        self._state = PlaybackState()
        self._last_written: PlaybackState | None = None
        self._pending: dict[str, Any] = {}
        self._throttle = TrailingThrottle(
            self._options.throttle_seconds, self._flush_pending, name=f"playback-{room_code}"
        )
        self._report_guard = IntervalGuard(self._options.report_interval_seconds, clock=monotonic)
        self._report_task: asyncio.Task[Any] | None = None
        self._widget: VideoWidget | None = None
        self._loaded_content_id: str | None = None
        self._phase = SyncPhase.IDLE
        self._expected: NativeState | None = None
        self._echo_budget = 0
        self._command_at = 0.0
        self._closed = False
        self.on_ended: EndedHandler | None = None

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def pending_changes(self) -> dict[str, Any]:
        return dict(self._pending)

    @property
    def target(self) -> PlaybackState:
        """The applied state with the pending local change laid over it."""

        if not self._pending:
            return self._state
        return self._state.model_copy(update=self._pending)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Remote updates
    # ------------------------------------------------------------------
    async def apply_snapshot(self, raw: Any) -> bool:
        return self.apply_remote(PlaybackState.parse(raw))

    def apply_remote(self, incoming: PlaybackState) -> bool:
        """Accept ``incoming`` only if it is newer than the applied state."""

        if self._closed:
            return False
        if incoming.last_updated == 0:
            # Absent or unstamped record; nothing has been written yet.
            return False
        if incoming.last_updated <= self._state.last_updated:
            written = self._last_written
            outcome = "echo" if written is not None and written.last_updated == incoming.last_updated else "stale"
            playback_updates_total.labels("remote", outcome).inc()
            logger.debug(
                "Discarded playback update",
                extra={
                    "outcome": outcome,
                    "incoming": incoming.last_updated,
                    "applied": self._state.last_updated,
                },
            )
            return False
        self._state = incoming
        playback_updates_total.labels("remote", "accepted").inc()
        self._converge()
        return True

    # ------------------------------------------------------------------
    # Local intent
    # ------------------------------------------------------------------
    def request_change(self, changes: Mapping[str, Any] | None = None, **fields: Any) -> None:
        """Merge a change into the pending update and schedule its write."""

        merged = {**(changes or {}), **fields}
        unknown = set(merged) - _CHANGE_FIELDS
        if unknown:
            raise ValueError(f"Unknown playback fields: {', '.join(sorted(unknown))}")
        if self._closed or not merged:
            return
        if "content_id" in merged:
            merged.setdefault("entry_id", None)
        self._pending.update(merged)
        self._throttle.request()

    def select(self, content_id: str, entry_id: str | None = None) -> None:
        target = self.target
        if target.content_id == content_id and target.entry_id == entry_id:
            return
        self.request_change(content_id=content_id, entry_id=entry_id, playing=True, position=0.0)

    def play(self) -> None:
        self.request_change(playing=True)

    def pause(self) -> None:
        self.request_change(playing=False)

    def seek(self, position: float) -> None:
        self.request_change(position=max(float(position), 0.0))

    def stop(self) -> None:
        self.request_change(content_id=None, entry_id=None, playing=False, position=0.0)

    async def flush(self) -> None:
        """Write the pending change now instead of at the end of the window."""

        await self._throttle.flush()

    async def _flush_pending(self) -> None:
        pending, self._pending = self._pending, {}
        if not pending or self._closed:
            return
        now_ms = self._now_ms()
        current = self._state
        content_changes = (
            pending.get("content_id", current.content_id) != current.content_id
            or pending.get("entry_id", current.entry_id) != current.entry_id
        )
        if "position" not in pending:
            pending["position"] = 0.0 if content_changes else self._observed_position(now_ms)
        candidate = current.model_copy(update=pending)
        if not self._is_meaningful(current, candidate, now_ms):
            playback_updates_total.labels("local", "suppressed").inc()
            return
        record = candidate.model_copy(
            update={"last_updated": max(now_ms, current.last_updated + 1)}
        )
        try:
            await self._store.write(self._path, record.to_store())
        except TransientStoreError:
            playback_updates_total.labels("local", "failed").inc()
            logger.warning(
                "Failed to write playback state; waiting for the next update",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        playback_updates_total.labels("local", "written").inc()
        if record.last_updated <= self._state.last_updated:
            # A newer remote record arrived while the write was in flight.
            return
        self._state = record
        self._last_written = record
        self._converge()

    def _is_meaningful(self, current: PlaybackState, candidate: PlaybackState, now_ms: int) -> bool:
        if not candidate.same_content(current) or candidate.playing != current.playing:
            return True
        if candidate.content_id is None:
            return False
        drift = abs(candidate.position - current.position_at(now_ms))
        return drift > self._options.position_delta_seconds

    def _observed_position(self, now_ms: int) -> float:
        widget = self._widget
        if widget is not None and self._loaded_content_id == self._state.content_id:
            try:
                return max(float(widget.current_position()), 0.0)
            except Exception:
                logger.debug("Could not read player position", exc_info=True)
        return self._state.position_at(now_ms)

    # ------------------------------------------------------------------
    # Player bridge
    # ------------------------------------------------------------------
    def attach_widget(self, widget: VideoWidget) -> None:
        self._widget = widget
        self._loaded_content_id = None
        self._set_phase(SyncPhase.IDLE)
        self._converge()

    def detach_widget(self) -> None:
        self._widget = None
        self._loaded_content_id = None
        self._set_phase(SyncPhase.IDLE)

    async def handle_widget_event(self, state: NativeState | str) -> None:
        """Translate a native player event into shared playback intent."""

        state = NativeState(state)
        if self._closed or self._widget is None:
            return
        if self._is_echo(state):
            playback_updates_total.labels("widget", "echo_ignored").inc()
            return
        if state is NativeState.ENDED:
            if self.on_ended is not None and self._state.content_id is not None:
                await self.on_ended(self._state)
            return
        if state in (NativeState.PLAYING, NativeState.PAUSED):
            try:
                position = self._command("position", self._widget.current_position)
            except WidgetSyncError:
                logger.warning("Ignoring player event without a readable position", extra={"event": state.value})
                return
            self.request_change(playing=state is NativeState.PLAYING, position=max(float(position), 0.0))

    def report_position(self) -> None:
        """Forward the player position if it is still playing."""

        widget = self._widget
        if widget is None or self._closed:
            return
        try:
            if widget.native_state() is not NativeState.PLAYING:
                return
            if not self._report_guard.ready():
                return
            position = float(widget.current_position())
        except Exception:
            logger.debug("Position report skipped", exc_info=True)
            return
        self.request_change(position=max(position, 0.0))

    def start_position_reports(self) -> None:
        if self._report_task is None or self._report_task.done():
            self._report_task = asyncio.create_task(self._report_loop(), name="playback-position-reports")

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._options.report_interval_seconds)
            self.report_position()

    def _set_phase(self, phase: SyncPhase, expected: NativeState | None = None) -> None:
        self._phase = phase
        self._expected = expected
        if phase in _AWAITING:
            self._echo_budget = self._options.echo_events
            self._command_at = self._monotonic()
        else:
            self._echo_budget = 0

    def _is_echo(self, state: NativeState) -> bool:
        if self._phase not in _AWAITING or state is NativeState.ENDED:
            return False
        if self._monotonic() - self._command_at > self._options.echo_window_seconds:
            self._set_phase(SyncPhase.SYNCED)
            return False
        if state in (NativeState.BUFFERING, NativeState.UNSTARTED):
            return True
        if self._echo_budget <= 0:
            self._set_phase(SyncPhase.SYNCED)
            return False
        self._echo_budget -= 1
        if state is self._expected or self._echo_budget <= 0:
            self._set_phase(SyncPhase.SYNCED)
        return True

    def _command(self, name: str, method: Callable[..., Any], *args: Any) -> Any:
        try:
            result = method(*args)
        except Exception as exc:
            widget_commands_total.labels(name, "error").inc()
            raise WidgetSyncError(name, str(exc)) from exc
        widget_commands_total.labels(name, "ok").inc()
        return result

    def _converge(self) -> None:
        widget = self._widget
        if widget is None:
            return
        target = self._state
        expected = NativeState.PLAYING if target.playing else NativeState.PAUSED
        try:
            native = NativeState(self._command("state", widget.native_state))
            if target.content_id is None:
                if native in _ACTIVE_STATES:
                    self._command("pause", widget.pause)
                    self._set_phase(SyncPhase.AWAITING_TOGGLE, NativeState.PAUSED)
                elif self._phase not in _AWAITING:
                    self._set_phase(SyncPhase.IDLE)
                self._loaded_content_id = None
                return

            position = target.position_at(self._now_ms())
            duration = float(self._command("duration", widget.duration) or 0.0)
            if duration > 0:
                position = min(position, duration)

            if target.content_id != self._loaded_content_id:
                self._command("load", widget.load, target.content_id, position)
                self._loaded_content_id = target.content_id
                self._command("play" if target.playing else "pause", widget.play if target.playing else widget.pause)
                self._set_phase(SyncPhase.AWAITING_LOAD, expected)
                return

            commanded = False
            current = float(self._command("position", widget.current_position))
            if abs(current - position) > self._options.seek_tolerance_seconds:
                self._command("seek", widget.seek, position)
                self._set_phase(SyncPhase.AWAITING_SEEK, expected)
                commanded = True

            if native is not NativeState.ENDED:
                if target.playing and native not in _ACTIVE_STATES:
                    self._command("play", widget.play)
                    commanded = True
                elif not target.playing and native in _ACTIVE_STATES:
                    self._command("pause", widget.pause)
                    commanded = True
                if commanded and self._phase is not SyncPhase.AWAITING_SEEK:
                    self._set_phase(SyncPhase.AWAITING_TOGGLE, expected)

            if not commanded and self._phase not in _AWAITING:
                self._set_phase(SyncPhase.SYNCED)
        except WidgetSyncError as exc:
            logger.warning("Player sync failed: %s", exc, extra={"command": exc.command})

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def close(self) -> None:
        """Cancel pending writes and timers; synchronous for teardown paths."""

        self._closed = True
        self._pending.clear()
        self._throttle.cancel()
        task, self._report_task = self._report_task, None
        if task is not None and not task.done():
            task.cancel()
        self._widget = None


__all__ = [
    "NativeState",
    "PlaybackSynchronizer",
    "SyncOptions",
    "SyncPhase",
    "VideoWidget",
]
