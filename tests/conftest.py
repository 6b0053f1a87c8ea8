"""Pytest bootstrap configuration.

Pin the settings the relay reads at import time before any application
module is imported, and provide in-memory transports so the protocol can
be exercised without a network.
"""
import os

os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("RELAY__MOTD", "")
os.environ.setdefault("RELAY__MAX_USERS", "-1")

import asyncio
import json
from typing import Any, Optional

import pytest

from application.services.realtime_service import RelayService
from core.config import ClientSettings, RelaySettings
from infrastructure.realtime.connection_manager import ConnectionRegistry
from infrastructure.realtime.event_hub import InMemoryEventHub
from shared.protocol import PROTOCOL_VERSION


class FakeTransport:
    """Server-side socket double recording every frame written to it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.closed_with: Optional[int] = None
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("broken pipe")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def frames(self, cmd: Optional[str] = None) -> list[dict]:
        return [f for f in self.sent if cmd is None or f.get("cmd") == cmd]

    def statuses(self) -> list[int]:
        return [f["code_id"] for f in self.frames("statuscode")]

    def clear(self) -> None:
        self.sent.clear()


class _ServerEnd:
    def __init__(self, pair: "LoopbackPair") -> None:
        self._pair = pair

    async def send_text(self, data: str) -> None:
        if not self._pair.closed:
            await self._pair.inbox.put(data)

    async def close(self, code: int = 1000) -> None:
        await self._pair.shutdown()


class _ClientEnd:
    def __init__(self, pair: "LoopbackPair") -> None:
        self._pair = pair

    async def send(self, data: str) -> None:
        if self._pair.closed:
            raise ConnectionResetError("socket closed")
        await self._pair.relay.handle_frame(self._pair.conn, data)

    async def close(self) -> None:
        await self._pair.shutdown()
        await self._pair.relay.disconnect(self._pair.conn)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._pair.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class LoopbackPair:
    """A client socket wired straight into a RelayService."""

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.conn: Any = None
        self.server = _ServerEnd(self)
        self.client = _ClientEnd(self)

    async def shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.inbox.put(None)


def make_relay(*, optimize_sending: bool = False, server_version: str = PROTOCOL_VERSION, **overrides: Any) -> RelayService:
    config = RelaySettings(optimize_sending=optimize_sending, **overrides)
    registry = ConnectionRegistry(optimize_sending=optimize_sending)
    return RelayService(
        registry=registry,
        events=InMemoryEventHub(),
        config=config,
        server_version=server_version,
    )


@pytest.fixture(params=[False, True], ids=["scan", "indexed"])
def relay(request) -> RelayService:
    """Relay service, once per room index strategy."""
    return make_relay(optimize_sending=request.param)


def _frame(cmd: str, **fields: Any) -> str:
    return json.dumps({"cmd": cmd, **fields})


@pytest.fixture
def open_client(relay: RelayService):
    """Factory: connect a fake socket, optionally handshake/setid/link it."""

    async def _open(
        *,
        handshake: bool = True,
        username: Optional[str] = None,
        rooms: Optional[list[str]] = None,
        remote: str = "127.0.0.1",
        fail: bool = False,
    ):
        transport = FakeTransport()
        conn = await relay.connect(transport, remote_address=remote)
        if handshake:
            await relay.handle_frame(conn, _frame("handshake", val={"language": "test"}, listener="hs"))
        if username is not None:
            await relay.handle_frame(conn, _frame("setid", val=username))
        if rooms is not None:
            await relay.handle_frame(conn, _frame("link", val=rooms))
        transport.clear()
        transport.fail = fail
        return conn, transport

    return _open


@pytest.fixture
def client_settings() -> ClientSettings:
    return ClientSettings(url="ws://relay.test/", handshake_delay=0, request_timeout=1.0)


def make_loopback_connector(relay: RelayService):
    """websockets-compatible connector that talks to ``relay`` in-process."""
    pairs: list[LoopbackPair] = []

    async def _connect(url: str):
        pair = LoopbackPair(relay)
        pair.conn = await relay.connect(pair.server, remote_address="10.0.0.1")
        pairs.append(pair)
        return pair.client

    _connect.pairs = pairs  # type: ignore[attr-defined]
    return _connect


@pytest.fixture
def loopback_connector(relay: RelayService):
    return make_loopback_connector(relay)


@pytest.fixture
def loopback_factory():
    return make_loopback_connector


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def relay_factory():
    return make_relay
