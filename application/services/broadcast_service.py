"""Room-scoped fan-out.

A frame sent to a set of rooms reaches, for each room, exactly the
connections that are members of that room; each copy is tagged with the
room it was delivered for. Callers hold the registry lock.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from core.logging_config import get_logger
from domain.connection.entity import Connection
from infrastructure.realtime.connection_manager import ConnectionRegistry
from shared.protocol import DEFAULT_ROOM, ULIST_SET, normalize_rooms, ulist_frame


logger = get_logger(__name__)


class BroadcastEngine:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def broadcast(
        self,
        frame: dict[str, Any],
        rooms: Optional[Iterable[str]] = None,
        *,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Deliver ``frame`` to the members of every room in ``rooms``.

        Returns the number of frames successfully written.
        """
        targets = normalize_rooms(rooms) if rooms is not None else [DEFAULT_ROOM]
        delivered = 0
        for room in targets:
            members = [m for m in self._registry.members_of(room) if m is not exclude]
            if not members:
                continue
            delivered += await self._registry.send_many(members, {**frame, "rooms": room})
        logger.debug("broadcast", cmd=frame.get("cmd"), rooms=targets, delivered=delivered)
        return delivered

    def user_list(self, room: str) -> list[dict[str, Any]]:
        return [c.to_user_object() for c in self._registry.members_of(room)]

    async def push_user_list(self, room: str, *, exclude: Optional[Connection] = None) -> int:
        """Send the current membership of ``room`` to all of its members."""
        return await self.broadcast(ulist_frame(ULIST_SET, self.user_list(room)), [room], exclude=exclude)

    async def send_user_list(self, conn: Connection, room: str) -> bool:
        """Send the membership of ``room`` to a single connection."""
        return await self._registry.send(conn, ulist_frame(ULIST_SET, self.user_list(room), room))

    async def send(self, conn: Connection, frame: dict[str, Any]) -> bool:
        return await self._registry.send(conn, frame)
