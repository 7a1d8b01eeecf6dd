"""Exceptions raised by the room synchronization layer."""

from __future__ import annotations


class WatchPartyError(Exception):
    """Base class for errors surfaced to the presentation layer."""


class RoomNotFound(WatchPartyError):
    """Raised when joining a room code that does not exist."""

    def __init__(self, room_code: str) -> None:
        super().__init__(f"Room {room_code} not found")
        self.room_code = room_code


class ValidationError(WatchPartyError, ValueError):
    """Raised when user input is rejected before any store access."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class TransientStoreError(WatchPartyError, RuntimeError):
    """Raised by store adapters when a read, write or subscribe fails."""


class NotInRoom(WatchPartyError, RuntimeError):
    """Raised when a member action is attempted after leaving the room."""


class WidgetSyncError(WatchPartyError):
    """Raised when a video widget command fails."""

    def __init__(self, command: str, detail: str) -> None:
        super().__init__(f"Video widget command '{command}' failed: {detail}")
        self.command = command


class SearchError(WatchPartyError):
    """Raised when the content metadata lookup fails (network or quota)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "WatchPartyError",
    "RoomNotFound",
    "NotInRoom",
    "ValidationError",
    "TransientStoreError",
    "WidgetSyncError",
    "SearchError",
]
