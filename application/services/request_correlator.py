"""Client-side request/response correlation.

Outbound requests that carry a ``listener`` token park a future here;
the matching ``statuscode`` frame settles it. Every pending request has
a timeout so the table can never grow without bound.
"""
from __future__ import annotations

import asyncio
import itertools
import uuid
from typing import Any, Dict, Optional

from core.logging_config import get_logger
from domain.common.exceptions import RequestTimeout, StatusRejected
from shared.codes import is_success


logger = get_logger(__name__)


class RequestCorrelator:
    def __init__(self, *, timeout: float = 10.0) -> None:
        self._timeout = timeout
        self._pending: Dict[Any, asyncio.Future] = {}
        self._seq = itertools.count(1)
        self._prefix = uuid.uuid4().hex[:8]

    @property
    def timeout(self) -> float:
        return self._timeout

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, listener: Any) -> bool:
        return listener in self._pending

    def new_token(self, hint: str = "req") -> str:
        return f"{hint}_{self._prefix}_{next(self._seq)}"

    def register(self, listener: Any) -> asyncio.Future:
        if listener in self._pending:
            raise ValueError(f"listener {listener!r} already pending")
        fut = asyncio.get_running_loop().create_future()
        self._pending[listener] = fut
        return fut

    async def wait(self, listener: Any, fut: asyncio.Future, timeout: Optional[float] = None) -> Any:
        """Await the reply for ``listener``; the entry is always removed afterwards."""
        limit = self._timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(fut, timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", listener=listener, timeout=limit)
            raise RequestTimeout(listener, limit) from None
        finally:
            if self._pending.get(listener) is fut:
                del self._pending[listener]

    def resolve(self, frame: dict[str, Any]) -> bool:
        """Settle the request answered by a statuscode ``frame``.

        Returns False when nobody is waiting for that listener.
        """
        listener = frame.get("listener")
        fut = self._pending.pop(listener, None) if listener is not None else None
        if fut is None:
            return False
        if fut.done():
            return True
        code = frame.get("code_id")
        try:
            code = int(code)
        except (TypeError, ValueError):
            fut.set_exception(StatusRejected(-1, listener))
            return True
        if is_success(code):
            val = frame.get("val")
            fut.set_result(val if val is not None else code)
        else:
            fut.set_exception(StatusRejected(code, listener))
        return True

    def cancel_all(self, exc: Optional[BaseException] = None) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if fut.done():
                continue
            if exc is None:
                fut.cancel()
            else:
                fut.set_exception(exc)

    def discard(self, listener: Any) -> None:
        """Forget a pending request without settling it (e.g. the send failed)."""
        fut = self._pending.pop(listener, None)
        if fut is not None and not fut.done():
            fut.cancel()
