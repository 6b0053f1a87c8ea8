"""
Wire protocol for the relay.

Every frame is a single JSON object sent as one WebSocket text message.
Inbound frames are validated into ``CommandFrame``; outbound frames are
plain dicts produced by the builders below so that optional keys are
omitted rather than serialized as ``null``.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from shared.codes import status_name


PROTOCOL_VERSION = "0.2.0"
MIN_SERVER_VERSION = "0.2.0"

DEFAULT_ROOM = "default"

# Client -> broker built-in commands
CMD_HANDSHAKE = "handshake"
CMD_SETID = "setid"
CMD_LINK = "link"
CMD_UNLINK = "unlink"
CMD_GMSG = "gmsg"
CMD_GVAR = "gvar"
CMD_PMSG = "pmsg"
CMD_PVAR = "pvar"

BUILTIN_COMMANDS = frozenset(
    {CMD_HANDSHAKE, CMD_SETID, CMD_LINK, CMD_UNLINK, CMD_GMSG, CMD_GVAR, CMD_PMSG, CMD_PVAR}
)

# Broker -> client frames
CMD_STATUS = "statuscode"
CMD_CLIENT_IP = "client_ip"
CMD_SERVER_VERSION = "server_version"
CMD_MOTD = "motd"
CMD_CLIENT_OBJ = "client_obj"
CMD_ULIST = "ulist"

ULIST_SET = "set"
ULIST_ADD = "add"
ULIST_REMOVE = "remove"


class CommandFrame(BaseModel):
    """Inbound client command.

    Unknown keys are kept so custom commands can read whatever they need.
    """

    model_config = ConfigDict(extra="allow")

    cmd: Optional[str] = None
    val: Any = None
    name: Any = None
    id: Any = None
    listener: Any = None


def encode_frame(frame: dict[str, Any]) -> str:
    return json.dumps(frame, ensure_ascii=False, separators=(",", ":"))


def decode_frame(raw: str | bytes) -> Any:
    """Parse a raw text frame. Raises ``ValueError`` on malformed JSON."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except RecursionError:
        # nesting deeper than the interpreter can decode
        raise ValueError("frame nested too deeply") from None


def status_frame(code: int, listener: Any = None, val: Any = None) -> dict[str, Any]:
    frame: dict[str, Any] = {
        "cmd": CMD_STATUS,
        "code": f"I:{int(code)} | {status_name(code)}",
        "code_id": int(code),
    }
    if listener is not None:
        frame["listener"] = listener
    if val is not None:
        frame["val"] = val
    return frame


def ulist_frame(mode: str, val: Any, room: Optional[str] = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"cmd": CMD_ULIST, "mode": mode, "val": val}
    if room is not None:
        frame["rooms"] = room
    return frame


def value_frame(cmd: str, val: Any) -> dict[str, Any]:
    return {"cmd": cmd, "val": val}


def message_frame(cmd: str, val: Any, *, name: Any = None, **extra: Any) -> dict[str, Any]:
    """Build a gmsg/gvar/pmsg/pvar frame; ``name`` is only set for variables."""
    frame: dict[str, Any] = {"cmd": cmd, "val": val}
    if name is not None:
        frame["name"] = name
    frame.update({k: v for k, v in extra.items() if v is not None})
    return frame


def parse_version(version: str) -> tuple[int, ...]:
    """'0.2.0' -> (0, 2, 0). Non-numeric parts count as 0."""
    parts: list[int] = []
    for piece in str(version).strip().lstrip("vV").split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def is_supported_server_version(version: str, minimum: str = MIN_SERVER_VERSION) -> bool:
    return parse_version(version) >= parse_version(minimum)


def normalize_rooms(rooms: Iterable[str]) -> list[str]:
    """Drop duplicates while keeping the caller's order."""
    seen: dict[str, None] = {}
    for room in rooms:
        seen.setdefault(room, None)
    return list(seen)


__all__ = [
    "PROTOCOL_VERSION",
    "MIN_SERVER_VERSION",
    "DEFAULT_ROOM",
    "BUILTIN_COMMANDS",
    "CommandFrame",
    "encode_frame",
    "decode_frame",
    "status_frame",
    "ulist_frame",
    "value_frame",
    "message_frame",
    "parse_version",
    "is_supported_server_version",
    "normalize_rooms",
]
