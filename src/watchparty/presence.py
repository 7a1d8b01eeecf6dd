"""Member presence and speaking flags for one room."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .errors import NotInRoom, TransientStoreError
from .models import Member
from .realtime.paths import member_path
from .realtime.store import CONNECTED_PATH, RealtimeStore, StoreSubscription

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Register the local member and keep its disconnect hook armed.

    Disconnect hooks are tied to a single connection, so every transition of
    the connectivity signal from down to up arms the hook again and restores
    the member record if the previous connection's hook already removed it.
    """

    def __init__(
        self,
        store: RealtimeStore,
        room_code: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._room_code = room_code
        self._clock = clock
        self._members: list[Member] = []
        self._member: Member | None = None
        self._connectivity: StoreSubscription | None = None
        self._online = False

    @property
    def members(self) -> list[Member]:
        return list(self._members)

    @property
    def speaking_members(self) -> list[Member]:
        return [member for member in self._members if member.is_speaking]

    @property
    def local_member(self) -> Member | None:
        return self._member

    async def apply_snapshot(self, raw: Any) -> None:
        self._members = sorted(Member.collection(raw), key=lambda member: (member.joined_at, member.id))

    async def register(self, member_id: str, name: str) -> Member:
        member = Member(id=member_id, name=name, is_speaking=False, joined_at=int(self._clock() * 1000))
        path = member_path(self._room_code, member_id)
        await self._store.write(path, member.to_store())
        self._member = member
        await self._store.on_disconnect_delete(path)
        self._online = True
        self._connectivity = await self._store.subscribe(CONNECTED_PATH, self._on_connectivity)
        return member

    async def _on_connectivity(self, value: Any) -> None:
        online = value is True
        was_online, self._online = self._online, online
        if not online or was_online or self._member is None:
            return
        path = member_path(self._room_code, self._member.id)
        try:
            await self._store.on_disconnect_delete(path)
            if await self._store.read(path) is None:
                await self._store.write(path, self._member.to_store())
                logger.info(
                    "Restored member after reconnect",
                    extra={"room_code": self._room_code, "member_id": self._member.id},
                )
        except TransientStoreError:
            logger.warning(
                "Could not re-arm presence after reconnect",
                extra={"room_code": self._room_code, "member_id": self._member.id},
                exc_info=True,
            )

    async def set_speaking(self, speaking: bool, member_id: str | None = None) -> None:
        """Advisory flag; any number of members may be speaking at once."""

        target = member_id or (self._member.id if self._member else None)
        if target is None:
            raise NotInRoom("No member registered in this room")
        await self._store.patch(member_path(self._room_code, target), {"isSpeaking": bool(speaking)})
        if self._member is not None and target == self._member.id:
            self._member = self._member.model_copy(update={"is_speaking": bool(speaking)})

    def detach(self) -> None:
        if self._connectivity is not None:
            self._connectivity.detach()

    async def unregister(self) -> None:
        """Remove the local member record; a second call does nothing."""

        member, self._member = self._member, None
        subscription, self._connectivity = self._connectivity, None
        if subscription is not None:
            await subscription.close()
        if member is None:
            return
        path = member_path(self._room_code, member.id)
        await self._store.cancel_on_disconnect(path)
        await self._store.delete(path)


__all__ = ["PresenceTracker"]
