"""
连接领域事件 - 提供给宿主应用的观察者通道
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from domain.connection.entity import Connection


@dataclass
class UserJoined:
    """握手完成事件"""
    connection: Connection
    event_id: Optional[str] = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UserLeft:
    """连接关闭事件"""
    connection: Connection
    rooms: list  # 断开前所在的房间
    event_id: Optional[str] = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class GlobalMessagePosted:
    """房间广播消息事件"""
    connection: Optional[Connection]  # None 表示由服务端发起
    value: Any
    rooms: list
    event_id: Optional[str] = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
