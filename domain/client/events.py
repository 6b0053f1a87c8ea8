"""
客户端事件 - RelayClient 通过事件中心发布
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Connected:
    """握手成功"""
    server_version: str
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class Disconnected:
    reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class GlobalMessageReceived:
    value: Any
    room: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class GlobalVariableReceived:
    name: str
    value: Any
    room: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class PrivateMessageReceived:
    value: Any
    origin: Optional[dict] = None  # 发送方的用户对象
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class PrivateVariableReceived:
    name: str
    value: Any
    origin: Optional[dict] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class UsernameSet:
    username: str
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class UsernameRejected:
    code: int
    occurred_at: datetime = field(default_factory=_now)


@dataclass
class RoomsLinked:
    rooms: list
    occurred_at: datetime = field(default_factory=_now)
