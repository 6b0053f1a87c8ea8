"""In-process connection registry and room index.

Keeps one record per accepted socket plus the transport used to reach
it. Room membership is derived from each connection's ``rooms``: either
scanned on demand or, with ``optimize_sending``, kept in an incremental
room -> connections index. Both strategies return members in creation
order.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from application.ports.realtime import RelayTransport
from core.logging_config import get_logger
from domain.connection.entity import Connection
from shared.protocol import encode_frame


logger = get_logger(__name__)


class ConnectionRegistry:
    """Live connections of one broker instance.

    Room memberships must only be changed through ``link``/``unlink`` here
    so the optional index stays consistent with ``Connection.rooms``.
    """

    def __init__(self, *, optimize_sending: bool = False) -> None:
        # connection_id -> Connection (dict order == creation order)
        self._connections: Dict[str, Connection] = {}
        self._transports: Dict[str, RelayTransport] = {}
        self._optimize = optimize_sending
        # room -> {connection_id: Connection}, only used when optimizing
        self._by_room: Dict[str, Dict[str, Connection]] = {}
        self._lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def optimize_sending(self) -> bool:
        return self._optimize

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn: object) -> bool:
        return isinstance(conn, Connection) and conn.connection_id in self._connections

    # -------------------- registry --------------------
    def add(self, conn: Connection, transport: RelayTransport) -> None:
        if conn.connection_id in self._connections:
            raise ValueError(f"connection {conn.connection_id} already registered")
        self._connections[conn.connection_id] = conn
        self._transports[conn.connection_id] = transport
        self._index(conn, conn.rooms)
        logger.debug("registry_add", connection_id=conn.connection_id, total=len(self._connections))

    def remove(self, conn: Connection) -> Optional[Connection]:
        removed = self._connections.pop(conn.connection_id, None)
        self._transports.pop(conn.connection_id, None)
        if removed is not None:
            self._unindex(removed, removed.rooms)
            logger.debug("registry_remove", connection_id=conn.connection_id, total=len(self._connections))
        return removed

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def get_by_public_id(self, public_id: str) -> Optional[Connection]:
        for conn in self._connections.values():
            if conn.public_id == public_id:
                return conn
        return None

    def all(self) -> List[Connection]:
        return list(self._connections.values())

    def transport_of(self, conn: Connection) -> Optional[RelayTransport]:
        return self._transports.get(conn.connection_id)

    # -------------------- room index --------------------
    def link(self, conn: Connection, rooms: Iterable[str]) -> List[str]:
        previous = conn.link(rooms)
        self._unindex(conn, previous)
        self._index(conn, conn.rooms)
        return previous

    def unlink(self, conn: Connection) -> List[str]:
        previous = conn.unlink()
        self._unindex(conn, previous)
        self._index(conn, conn.rooms)
        return previous

    def members_of(self, room: str) -> List[Connection]:
        if self._optimize:
            return list(self._by_room.get(room, {}).values())
        return [c for c in self._connections.values() if c.in_room(room)]

    def rooms(self) -> List[str]:
        """Every room that currently has at least one member."""
        if self._optimize:
            return [room for room, members in self._by_room.items() if members]
        seen: Dict[str, None] = {}
        for conn in self._connections.values():
            for room in conn.rooms:
                seen.setdefault(room, None)
        return list(seen)

    def find_private_target(self, username: str, rooms: Iterable[str]) -> Optional[Connection]:
        """Earliest-created connection named ``username`` sharing one of ``rooms``."""
        wanted = list(rooms)
        for conn in self._connections.values():
            if conn.username == username and conn.shared_rooms(wanted):
                return conn
        return None

    def _index(self, conn: Connection, rooms: Iterable[str]) -> None:
        if not self._optimize:
            return
        for room in rooms:
            members = self._by_room.setdefault(room, {})
            members[conn.connection_id] = conn
            # keep creation order inside each room
            if len(members) > 1:
                self._by_room[room] = dict(sorted(members.items(), key=lambda kv: kv[1].created_seq))

    def _unindex(self, conn: Connection, rooms: Iterable[str]) -> None:
        if not self._optimize:
            return
        for room in rooms:
            members = self._by_room.get(room)
            if members is None:
                continue
            members.pop(conn.connection_id, None)
            if not members:
                del self._by_room[room]

    # -------------------- delivery --------------------
    async def send(self, conn: Connection, frame: dict[str, Any]) -> bool:
        """Write one frame to one connection; failures are logged, never raised."""
        ws = self._transports.get(conn.connection_id)
        if ws is None:
            return False
        try:
            await ws.send_text(encode_frame(frame))
            return True
        except Exception as exc:
            logger.warning(
                "ws_send_failed",
                connection_id=conn.connection_id,
                cmd=frame.get("cmd"),
                error=str(exc),
            )
            return False

    async def send_many(self, targets: Iterable[Connection], frame: dict[str, Any]) -> int:
        delivered = 0
        for conn in list(targets):
            if await self.send(conn, frame):
                delivered += 1
        return delivered

    async def close(self, conn: Connection, code: int = 1000) -> None:
        ws = self._transports.get(conn.connection_id)
        if ws is None:
            return
        try:
            await ws.close(code=code)
        except Exception as exc:  # pragma: no cover
            logger.warning("ws_close_failed", connection_id=conn.connection_id, error=str(exc))
