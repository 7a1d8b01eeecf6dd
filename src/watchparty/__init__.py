"""Room synchronization for watching videos together."""

from .app import WatchParty, build_store
from .config import Settings, get_settings
from .errors import (
    NotInRoom,
    RoomNotFound,
    SearchError,
    TransientStoreError,
    ValidationError,
    WatchPartyError,
    WidgetSyncError,
)
from .models import ChatMessage, ContentSummary, Member, PlaybackState, QueueEntry, Room
from .playback import NativeState, PlaybackSynchronizer, SyncPhase, VideoWidget
from .reaper import ReapReport, StaleRoomReaper
from .session import RoomSession, RoomSessionManager, SessionStore

__all__ = [
    "ChatMessage",
    "ContentSummary",
    "Member",
    "NativeState",
    "NotInRoom",
    "PlaybackState",
    "PlaybackSynchronizer",
    "QueueEntry",
    "ReapReport",
    "Room",
    "RoomNotFound",
    "RoomSession",
    "RoomSessionManager",
    "SearchError",
    "SessionStore",
    "Settings",
    "StaleRoomReaper",
    "SyncPhase",
    "TransientStoreError",
    "ValidationError",
    "VideoWidget",
    "WatchParty",
    "WatchPartyError",
    "WidgetSyncError",
    "build_store",
    "get_settings",
]
