"""Typed records for the room tree and validated input payloads."""

from __future__ import annotations

import logging
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, constr

logger = logging.getLogger(__name__)

ROOM_CODE_PATTERN = r"^[A-Z0-9]{6}$"
CONTENT_ID_PATTERN = r"^[A-Za-z0-9_-]{11}$"
DISPLAY_NAME_MAX_LENGTH = 20
MESSAGE_MAX_LENGTH = 200
TITLE_MAX_LENGTH = 100

RecordT = TypeVar("RecordT", bound="StoreRecord")


class StoreRecord(BaseModel):
    """Base for records read from and written to the store.

    Records are keyed by their location in the tree, so ``id`` is taken from
    the snapshot key and never written back as a field.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)

    @classmethod
    def from_snapshot(cls: type[RecordT], key: str, raw: Any) -> RecordT | None:
        """Convert one child of a snapshot, or ``None`` when it is malformed."""

        if not isinstance(raw, Mapping):
            logger.debug("Discarded non-mapping %s", cls.__name__, extra={"key": key})
            return None
        try:
            return cls.model_validate({**raw, "id": key})
        except PydanticValidationError:
            logger.debug("Discarded malformed %s", cls.__name__, extra={"key": key})
            return None

    @classmethod
    def collection(cls: type[RecordT], raw: Any) -> list[RecordT]:
        """Convert a whole collection snapshot, dropping malformed children."""

        if not isinstance(raw, Mapping):
            return []
        records = []
        for key, value in raw.items():
            record = cls.from_snapshot(str(key), value)
            if record is not None:
                records.append(record)
        return records


class Room(StoreRecord):
    id: str = Field(..., description="Room code")
    created_at: int = Field(default=0, alias="createdAt", description="Creation time in ms")
    created_by: str = Field(default="", alias="createdBy")


class Member(StoreRecord):
    id: str
    name: str = Field(..., min_length=1)
    is_speaking: bool = Field(default=False, alias="isSpeaking")
    joined_at: int = Field(default=0, alias="joinedAt")


class QueueEntry(StoreRecord):
    id: str = Field(..., description="Store generated key, chronologically ordered")
    content_id: constr(pattern=CONTENT_ID_PATTERN) = Field(..., alias="videoId")
    title: str = Field(..., min_length=1)
    thumbnail_url: str = Field(default="", alias="thumbnail")
    channel: str = Field(default="")
    added_by: str = Field(default="", alias="addedBy")
    added_at: int = Field(default=0, alias="addedAt")


class ChatMessage(StoreRecord):
    id: str
    sender: str = Field(..., alias="user")
    text: str
    timestamp: int = Field(default=0, description="Sender clock in ms")


class PlaybackState(StoreRecord):
    """The single shared record of what is playing and where."""

    content_id: str | None = Field(default=None, alias="currentVideo")
    entry_id: str | None = Field(default=None, alias="currentEntry")
    playing: bool = Field(default=False, alias="isPlaying")
    position: float = Field(default=0.0, ge=0, alias="currentTime")
    last_updated: int = Field(default=0, alias="lastUpdated")

    @classmethod
    def parse(cls, raw: Any) -> "PlaybackState":
        """Read the state node, defaulting absent or malformed data to idle."""

        if not isinstance(raw, Mapping):
            return cls()
        try:
            return cls.model_validate(raw)
        except PydanticValidationError:
            logger.debug("Discarded malformed playback state")
            return cls()

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def position_at(self, now_ms: int) -> float:
        """Position extrapolated to ``now_ms`` while playing."""

        if not self.playing or self.last_updated <= 0:
            return self.position
        elapsed = max(now_ms - self.last_updated, 0) / 1000
        return self.position + elapsed

    def same_content(self, other: "PlaybackState") -> bool:
        return self.content_id == other.content_id and self.entry_id == other.entry_id


# ---------------------------------------------------------------------------
# Input payloads validated at the boundary
# ---------------------------------------------------------------------------


class JoinRequest(BaseModel):
    room_code: constr(strip_whitespace=True, pattern=ROOM_CODE_PATTERN)
    display_name: constr(strip_whitespace=True, min_length=1, max_length=DISPLAY_NAME_MAX_LENGTH)
    member_id: constr(strip_whitespace=True, min_length=1, max_length=128)


class ChatMessageCreate(BaseModel):
    text: constr(strip_whitespace=True, min_length=1, max_length=MESSAGE_MAX_LENGTH)


class ContentSummary(BaseModel):
    """Metadata of one piece of external content, e.g. a search result."""

    model_config = ConfigDict(frozen=True)

    external_id: constr(strip_whitespace=True, pattern=CONTENT_ID_PATTERN)
    title: constr(strip_whitespace=True, min_length=1, max_length=TITLE_MAX_LENGTH)
    thumbnail_url: constr(strip_whitespace=True, min_length=1)
    channel_name: str = ""


class SavedSession(BaseModel):
    """Session remembered locally so a restart rejoins the same room."""

    room_code: constr(pattern=ROOM_CODE_PATTERN)
    display_name: constr(min_length=1, max_length=DISPLAY_NAME_MAX_LENGTH)
    member_id: constr(min_length=1)
    expires_at: float


__all__ = [
    "ChatMessage",
    "ChatMessageCreate",
    "ContentSummary",
    "JoinRequest",
    "Member",
    "PlaybackState",
    "QueueEntry",
    "Room",
    "SavedSession",
    "StoreRecord",
]
