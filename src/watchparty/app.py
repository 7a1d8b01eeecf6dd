"""Composition root wiring the store, sessions, reaper and search."""

from __future__ import annotations

import logging

from .config import Settings, get_settings
from .logging_config import configure_logging
from .realtime import MemoryStore, MemoryTree, RealtimeStore, RedisStore, RedisStoreConfig
from .reaper import StaleRoomReaper
from .search import YouTubeSearchClient
from .session import RoomSessionManager, SessionStore, build_cache

logger = logging.getLogger(__name__)


def build_store(settings: Settings, *, tree: MemoryTree | None = None) -> RealtimeStore:
    if settings.store_backend == "redis":
        if not settings.redis_url:
            raise RuntimeError("WATCHPARTY_REDIS_URL is required for the redis store backend")
        return RedisStore(
            RedisStoreConfig(
                url=settings.redis_url,
                prefix=settings.redis_prefix,
                lease_seconds=settings.disconnect_lease_seconds,
                recovery_base_delay=settings.store_recovery_base_delay_seconds,
                recovery_max_delay=settings.store_recovery_max_delay_seconds,
            )
        )
    return MemoryStore(tree)


class WatchParty:
    """Own the store connection and every long lived service built on it."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: RealtimeStore | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.session_store = session_store or SessionStore(
            build_cache(self.settings),
            key=self.settings.session_cache_key,
            expiry_seconds=self.settings.session_expiry_seconds,
        )
        self.sessions = RoomSessionManager(self.store, self.settings, self.session_store)
        self.reaper = StaleRoomReaper(self.store, self.settings, session_store=self.session_store)
        self.search = YouTubeSearchClient(self.settings)
        self._started = False

    async def start(self, *, configure_logs: bool = True) -> None:
        if self._started:
            return
        if configure_logs:
            configure_logging("DEBUG" if self.settings.debug else self.settings.log_level)
        await self.store.connect()
        self.reaper.start()
        self._started = True
        logger.info(
            "Watch party client started",
            extra={"environment": self.settings.environment, "store_backend": self.settings.store_backend},
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.reaper.stop()
        await self.sessions.close()
        await self.store.close()
        logger.info("Watch party client stopped")


__all__ = ["WatchParty", "build_store"]
