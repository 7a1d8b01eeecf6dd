"""Background deletion of empty rooms past their timeout."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .config import Settings
from .errors import TransientStoreError
from .models import Room
from .monitoring.metrics import rooms_reaped_total
from .realtime.paths import ROOMS_ROOT, members_path, room_path
from .realtime.store import RealtimeStore
from .session import SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReapReport:
    scanned: int = 0
    deleted: int = 0
    failed: int = 0
    sessions_purged: int = 0
    expired_clients: int = 0


class StaleRoomReaper:
    """Periodically delete rooms that have no members and are older than the timeout."""

    def __init__(
        self,
        store: RealtimeStore,
        settings: Settings,
        *,
        session_store: SessionStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._interval = settings.reaper_interval_seconds
        self._timeout_ms = int(settings.room_timeout_seconds * 1000)
        self._session_store = session_store
        self._clock = clock
        self._task: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> ReapReport:
        report = ReapReport()
        if self._session_store is not None and self._session_store.purge_expired():
            report.sessions_purged = 1

        try:
            report.expired_clients = await self._store.expire_disconnected()
            rooms = await self._store.read(ROOMS_ROOT)
        except TransientStoreError:
            logger.warning("Room sweep skipped, store unavailable", exc_info=True)
            return report
        if not isinstance(rooms, Mapping):
            return report

        now_ms = int(self._clock() * 1000)
        for room_code, raw in rooms.items():
            report.scanned += 1
            try:
                if await self._reap_room(str(room_code), raw, now_ms):
                    report.deleted += 1
                    rooms_reaped_total.labels("deleted").inc()
                else:
                    rooms_reaped_total.labels("kept").inc()
            except Exception:
                report.failed += 1
                rooms_reaped_total.labels("failed").inc()
                logger.exception("Failed to check room", extra={"room_code": room_code})

        if report.deleted or report.failed:
            logger.info(
                "Room sweep finished",
                extra={"scanned": report.scanned, "deleted": report.deleted, "failed": report.failed},
            )
        return report

    async def _reap_room(self, room_code: str, raw: Any, now_ms: int) -> bool:
        if isinstance(raw, Mapping) and raw.get("users"):
            return False
        room = Room.from_snapshot(room_code, raw) or Room(id=room_code)
        if now_ms - room.created_at <= self._timeout_ms:
            return False
        # Someone may have joined since the listing was read.
        if await self._store.read(members_path(room_code)) is not None:
            return False
        await self._store.delete(room_path(room_code))
        logger.info("Deleted stale room", extra={"room_code": room_code, "created_at": room.created_at})
        return True

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="stale-room-reaper")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Room sweep failed")
            await asyncio.sleep(self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["ReapReport", "StaleRoomReaper"]
