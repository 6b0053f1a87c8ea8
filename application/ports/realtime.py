"""
Realtime ports (contracts-first).

Defines the minimal transport surface the relay needs from a socket and
the observer contract used to notify the embedding application, so the
application layer stays decoupled from FastAPI/websockets internals.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol


class RelayTransport(Protocol):
    """One live bidirectional socket.

    ``fastapi.WebSocket`` satisfies this contract as-is.
    """

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


EventHandler = Callable[[Any], Awaitable[None] | None]


class RelayEventPort(Protocol):
    """Observer side channel (userJoin / userLeave / globalMessage ...)."""

    async def publish(self, event: Any) -> None: ...

    def subscribe(self, event_type: type | str, handler: EventHandler) -> None: ...

    def unsubscribe(self, event_type: type | str, handler: EventHandler) -> None: ...

    async def aclose(self) -> None: ...  # pragma: no cover - optional


CommandHandler = Callable[[Any, Any, Any], Awaitable[None] | None]
"""Custom command capability: ``(connection, value, target_id_or_none)``."""


__all__ = ["RelayTransport", "RelayEventPort", "EventHandler", "CommandHandler"]
