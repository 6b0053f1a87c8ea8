"""
连接领域实体 - 每个已接受的 WebSocket 连接对应一条记录
"""
from __future__ import annotations

import itertools
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from shared.protocol import DEFAULT_ROOM, normalize_rooms


PUBLIC_ID_WIDTH = 19

_creation_counter = itertools.count(1)


def generate_public_id() -> str:
    """Random fixed-width decimal identity shown to other clients."""
    return str(secrets.randbelow(10 ** PUBLIC_ID_WIDTH)).zfill(PUBLIC_ID_WIDTH)


class HandshakeState(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


@dataclass(eq=False)
class Connection:
    """连接实体 - 领域核心

    ``public_id`` / ``connection_id`` never change after creation and
    ``rooms`` is never empty.
    """

    remote_address: Optional[str] = None
    public_id: str = field(default_factory=generate_public_id)
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    username: Optional[str] = None
    platform: Any = field(default_factory=dict)
    handshake_state: HandshakeState = HandshakeState.PENDING
    rooms: list[str] = field(default_factory=lambda: [DEFAULT_ROOM])
    created_seq: int = field(default_factory=lambda: next(_creation_counter))
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __setattr__(self, key: str, value: Any) -> None:
        if key in ("public_id", "connection_id") and key in self.__dict__:
            raise AttributeError(f"{key} is immutable")
        super().__setattr__(key, value)

    @property
    def is_handshaked(self) -> bool:
        return self.handshake_state is HandshakeState.COMPLETE

    def complete_handshake(self, platform: Any) -> None:
        """业务规则：握手只能完成一次"""
        if self.is_handshaked:
            raise ValueError("handshake already completed")
        self.platform = platform if platform is not None else {}
        self.handshake_state = HandshakeState.COMPLETE

    def set_username(self, username: str) -> None:
        self.username = username

    def link(self, rooms: Iterable[str]) -> list[str]:
        """Replace room memberships; returns the previous rooms."""
        new_rooms = normalize_rooms(rooms)
        if not new_rooms:
            raise ValueError("a connection must belong to at least one room")
        previous, self.rooms = self.rooms, new_rooms
        return previous

    def unlink(self) -> list[str]:
        """Reset memberships to the default room; returns the previous rooms."""
        previous, self.rooms = self.rooms, [DEFAULT_ROOM]
        return previous

    def in_room(self, room: str) -> bool:
        return room in self.rooms

    def shared_rooms(self, rooms: Iterable[str]) -> list[str]:
        wanted = set(rooms)
        return [room for room in self.rooms if room in wanted]

    def to_user_object(self) -> dict[str, Any]:
        """Identity as seen by other clients (no internal uuid)."""
        obj: dict[str, Any] = {"id": self.public_id}
        if self.username:
            obj["username"] = self.username
        return obj

    def to_client_object(self) -> dict[str, Any]:
        """Identity as seen by the connection itself."""
        obj: dict[str, Any] = {"id": self.public_id, "uuid": self.connection_id}
        if self.username:
            obj["username"] = self.username
        return obj
