"""Store layout of a room."""

from __future__ import annotations

ROOMS_ROOT = "rooms"


def room_path(room_code: str) -> str:
    return f"{ROOMS_ROOT}/{room_code}"


def members_path(room_code: str) -> str:
    return f"{room_path(room_code)}/users"


def member_path(room_code: str, member_id: str) -> str:
    return f"{members_path(room_code)}/{member_id}"


def queue_path(room_code: str) -> str:
    return f"{room_path(room_code)}/queue"


def queue_entry_path(room_code: str, entry_id: str) -> str:
    return f"{queue_path(room_code)}/{entry_id}"


def chat_path(room_code: str) -> str:
    return f"{room_path(room_code)}/chat"


def playback_path(room_code: str) -> str:
    return f"{room_path(room_code)}/state"
