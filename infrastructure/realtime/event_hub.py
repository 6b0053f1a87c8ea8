"""In-memory implementation of RelayEventPort.

Single-process only. Handlers are keyed by event class (or ``"*"`` for
every event) and may be plain functions or coroutines.
"""
from __future__ import annotations

import inspect
from typing import Any, Dict, List

from application.ports.realtime import EventHandler, RelayEventPort
from core.logging_config import get_logger


logger = get_logger(__name__)

ALL_EVENTS = "*"


class InMemoryEventHub(RelayEventPort):
    def __init__(self) -> None:
        self._handlers: Dict[Any, List[EventHandler]] = {}

    def subscribe(self, event_type: type | str, handler: EventHandler) -> None:  # type: ignore[override]
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: type | str, handler: EventHandler) -> None:  # type: ignore[override]
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def on(self, event_type: type | str):
        """Decorator form of ``subscribe``."""
        def decorator(fn: EventHandler) -> EventHandler:
            self.subscribe(event_type, fn)
            return fn
        return decorator

    async def publish(self, event: Any) -> None:  # type: ignore[override]
        # Best-effort deliver sequentially; a failing observer never breaks the relay
        handlers = [
            h
            for key in (*type(event).__mro__, ALL_EVENTS)
            for h in list(self._handlers.get(key, []))
        ]
        for h in handlers:
            try:
                result = h(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event=type(event).__name__,
                    error=str(exc),
                    exc_info=True,
                )

    async def aclose(self) -> None:  # type: ignore[override]
        self._handlers.clear()
