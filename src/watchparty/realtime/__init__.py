"""Realtime store adapters used as the synchronization medium."""

from .memory import MemoryStore, MemoryTree  # noqa: F401
from .redis_store import RedisStore, RedisStoreConfig  # noqa: F401
from .store import (  # noqa: F401
    CONNECTED_PATH,
    RealtimeStore,
    StoreSubscription,
)

__all__ = [
    "CONNECTED_PATH",
    "MemoryStore",
    "MemoryTree",
    "RealtimeStore",
    "RedisStore",
    "RedisStoreConfig",
    "StoreSubscription",
]
