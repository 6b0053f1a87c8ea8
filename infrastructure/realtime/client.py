"""Python client for the relay.

Holds one WebSocket to a broker (``websockets`` asyncio client), performs
the delayed handshake, mirrors the shared state pushed by the broker and
turns ``statuscode`` replies into awaited results through the
RequestCorrelator.
"""
from __future__ import annotations

import asyncio
import platform
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from application.services.request_correlator import RequestCorrelator
from core.config import ClientSettings, settings
from core.logging_config import get_logger
from domain.client.events import (
    Connected,
    Disconnected,
    GlobalMessageReceived,
    GlobalVariableReceived,
    PrivateMessageReceived,
    PrivateVariableReceived,
    RoomsLinked,
    UsernameRejected,
    UsernameSet,
)
from domain.common.exceptions import (
    ConnectionLost,
    HandshakeError,
    RelayException,
    ServerVersionError,
    StatusRejected,
)
from infrastructure.realtime.event_hub import InMemoryEventHub
from shared.protocol import (
    CMD_CLIENT_IP,
    CMD_CLIENT_OBJ,
    CMD_GMSG,
    CMD_GVAR,
    CMD_HANDSHAKE,
    CMD_LINK,
    CMD_MOTD,
    CMD_PMSG,
    CMD_PVAR,
    CMD_SERVER_VERSION,
    CMD_SETID,
    CMD_STATUS,
    CMD_ULIST,
    CMD_UNLINK,
    DEFAULT_ROOM,
    MIN_SERVER_VERSION,
    ULIST_ADD,
    ULIST_REMOVE,
    ULIST_SET,
    decode_frame,
    encode_frame,
    is_supported_server_version,
    normalize_rooms,
)


logger = get_logger(__name__)

HANDSHAKE_LISTENER = "handshake_cfg"

Connector = Callable[[str], Awaitable[Any]]


class RelayClient:
    def __init__(
        self,
        *,
        config: Optional[ClientSettings] = None,
        events: Optional[InMemoryEventHub] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._cfg = config or settings.client
        self._events = events or InMemoryEventHub()
        self._connector: Connector = connector or ws_connect
        self._correlator = RequestCorrelator(timeout=self._cfg.request_timeout)
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        # observer callbacks started from the reader; they may await requests of their own
        self._event_tasks: Set[asyncio.Task] = set()
        self._reset_state()

    def _reset_state(self) -> None:
        self.user_object: Dict[str, Any] = {}
        self.user_lists: Dict[str, List[dict]] = {}
        self.motd = ""
        self.ip: Optional[str] = None
        self.connected = False
        self.server_version: Optional[str] = None
        self.global_message: Any = ""
        self.global_variables: Dict[str, Any] = {}
        self.private_message: Any = ""
        self.private_variables: Dict[str, Any] = {}
        self._username: Optional[str] = None
        self._rooms: List[str] = [DEFAULT_ROOM]

    # -------------------- properties --------------------
    @property
    def events(self) -> InMemoryEventHub:
        return self._events

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def username(self) -> str:
        return self._username or ""

    @property
    def rooms(self) -> List[str]:
        return list(self._rooms)

    @property
    def user_list(self) -> List[dict]:
        """Membership of the first linked room."""
        return list(self.user_lists.get(self._rooms[0], []))

    # -------------------- lifecycle --------------------
    async def connect(self, url: Optional[str] = None) -> None:
        """Open the socket and complete the handshake.

        Raises ``ServerVersionError`` for brokers older than MIN_SERVER_VERSION
        and ``HandshakeError`` when the handshake is refused or never acknowledged.
        """
        if self._ws is not None:
            raise RuntimeError("client is already connected")
        target = url or self._cfg.url
        self._ws = await self._connector(target)
        self._reader = asyncio.create_task(self._read_loop(), name="relay-client-reader")
        logger.info("relay_client_opened", url=target)

        # Give the broker a moment to finish setting up the socket
        await asyncio.sleep(self._cfg.handshake_delay)
        try:
            await self._request(
                {"cmd": CMD_HANDSHAKE, "val": self._platform_info()},
                listener=HANDSHAKE_LISTENER,
            )
        except ServerVersionError:
            await self._teardown("unsupported server version")
            raise
        except RelayException as exc:
            await self._teardown("handshake failed")
            raise HandshakeError(f"Failed to connect to server. Server message: {exc.code}") from exc
        if self.server_version is None:
            await self._teardown("no server version")
            raise HandshakeError("Server did not acknowledge a protocol version")

        self.connected = True
        logger.info("relay_client_connected", server_version=self.server_version)
        await self._events.publish(Connected(server_version=self.server_version))

    async def disconnect(self) -> None:
        await self._teardown("client disconnect")

    async def _teardown(self, reason: str) -> None:
        ws, reader = self._ws, self._reader
        if ws is None:
            return
        self._ws = None
        self._reader = None
        was_connected = self.connected
        self._correlator.cancel_all(ConnectionLost(f"Connection closed: {reason}"))
        self._reset_state()
        try:
            await ws.close()
        except Exception as exc:  # pragma: no cover
            logger.debug("relay_client_close_failed", error=str(exc))
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except (asyncio.CancelledError, Exception):
                pass
        await self._drain_events()
        logger.info("relay_client_closed", reason=reason)
        if was_connected:
            await self._events.publish(Disconnected(reason=reason))

    def _platform_info(self) -> dict[str, Any]:
        return {
            "language": self._cfg.language,
            "version": {"python": platform.python_version(), "module": settings.VERSION},
        }

    # -------------------- transport --------------------
    async def _send(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionLost()
        await self._ws.send(encode_frame(frame))

    async def _request(self, frame: dict[str, Any], *, listener: Optional[str] = None, hint: str = "req") -> Any:
        """Send ``frame`` tagged with a listener and wait for its status reply."""
        token = listener or self._correlator.new_token(hint)
        fut = self._correlator.register(token)
        try:
            await self._send({**frame, "listener": token})
        except BaseException:
            self._correlator.discard(token)
            raise
        return await self._correlator.wait(token, fut)

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for message in ws:
                await self._process(message)
        except ConnectionClosed as exc:
            logger.info("relay_client_connection_closed", code=getattr(exc.rcvd, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("relay_client_reader_failed", error=str(exc), exc_info=True)
        if self._ws is ws:
            await self._teardown("connection closed by server")

    async def _process(self, raw: str | bytes) -> None:
        try:
            frame = decode_frame(raw)
        except ValueError:
            logger.debug("relay_client_bad_frame")
            return
        if not isinstance(frame, dict):
            return
        cmd = frame.get("cmd")
        room = frame.get("rooms")

        if cmd == CMD_STATUS:
            self._correlator.resolve(frame)
        elif cmd == CMD_CLIENT_IP:
            self.ip = frame.get("val")
        elif cmd == CMD_SERVER_VERSION:
            version = str(frame.get("val"))
            if not is_supported_server_version(version, MIN_SERVER_VERSION):
                logger.error("relay_client_version_unsupported", version=version, minimum=MIN_SERVER_VERSION)
                self._correlator.cancel_all(ServerVersionError(version, MIN_SERVER_VERSION))
                return
            self.server_version = version
        elif cmd == CMD_MOTD:
            self.motd = frame.get("val") or ""
        elif cmd in (CMD_CLIENT_OBJ, "client_object"):
            self.user_object = frame.get("val") or {}
        elif cmd == CMD_ULIST:
            self._apply_ulist(frame.get("mode"), frame.get("val"), room or DEFAULT_ROOM)
        elif not self._accepts_room(room):
            return
        elif cmd == CMD_GMSG:
            self.global_message = frame.get("val")
            self._emit(GlobalMessageReceived(value=self.global_message, room=room))
        elif cmd == CMD_GVAR:
            self.global_variables[frame.get("name")] = frame.get("val")
            self._emit(GlobalVariableReceived(name=frame.get("name"), value=frame.get("val"), room=room))
        elif cmd == CMD_PMSG:
            self.private_message = frame.get("val")
            self._emit(PrivateMessageReceived(value=self.private_message, origin=frame.get("origin")))
        elif cmd == CMD_PVAR:
            self.private_variables[frame.get("name")] = frame.get("val")
            self._emit(
                PrivateVariableReceived(name=frame.get("name"), value=frame.get("val"), origin=frame.get("origin"))
            )

    def _emit(self, event: Any) -> None:
        """Publish ``event`` without blocking the reader."""
        task = asyncio.create_task(self._events.publish(event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _drain_events(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._event_tasks if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _accepts_room(self, room: Any) -> bool:
        return room is None or room in self._rooms

    def _apply_ulist(self, mode: Any, val: Any, room: str) -> None:
        members = self.user_lists.setdefault(room, [])
        if mode == ULIST_SET:
            self.user_lists[room] = list(val or [])
        elif mode == ULIST_ADD and isinstance(val, dict):
            if all(m.get("id") != val.get("id") for m in members):
                members.append(val)
        elif mode == ULIST_REMOVE and isinstance(val, dict):
            self.user_lists[room] = [m for m in members if m.get("id") != val.get("id")]

    # -------------------- commands --------------------
    async def set_username(self, username: str) -> dict:
        try:
            result = await self._request({"cmd": CMD_SETID, "val": username}, hint="username_cfg")
        except StatusRejected as exc:
            await self._events.publish(UsernameRejected(code=exc.code))
            raise
        if isinstance(result, dict):
            self.user_object = result
            self._username = result.get("username", username)
        else:
            self._username = username
        await self._events.publish(UsernameSet(username=self._username))
        return self.user_object

    async def link_rooms(self, rooms: List[str] | str) -> List[str]:
        wanted = normalize_rooms([rooms] if isinstance(rooms, str) else rooms)
        await self._request({"cmd": CMD_LINK, "val": wanted}, hint="link")
        self._rooms = wanted
        await self._events.publish(RoomsLinked(rooms=list(wanted)))
        return self.rooms

    async def unlink_rooms(self) -> List[str]:
        await self._request({"cmd": CMD_UNLINK}, hint="unlink")
        self._rooms = [DEFAULT_ROOM]
        await self._events.publish(RoomsLinked(rooms=[DEFAULT_ROOM]))
        return self.rooms

    async def send_global_message(self, message: Any, *, wait: bool = False) -> Any:
        frame = {"cmd": CMD_GMSG, "val": message}
        if wait:
            return await self._request(frame, hint="gmsg")
        await self._send(frame)

    async def send_global_variable(self, name: str, value: Any, *, wait: bool = False) -> Any:
        frame = {"cmd": CMD_GVAR, "name": name, "val": value}
        if wait:
            return await self._request(frame, hint="gvar")
        await self._send(frame)

    async def send_private_message(self, target: str, message: Any) -> bool:
        if not self._username:
            logger.warning("relay_client_username_required", command=CMD_PMSG)
            return False
        await self._send({"cmd": CMD_PMSG, "id": target, "val": message})
        return True

    async def send_private_variable(self, target: str, name: str, value: Any) -> bool:
        if not self._username:
            logger.warning("relay_client_username_required", command=CMD_PVAR)
            return False
        await self._send({"cmd": CMD_PVAR, "id": target, "name": name, "val": value})
        return True

    async def send_custom_command(self, name: str, value: Any = None, target: Optional[str] = None, *, wait: bool = False) -> Any:
        frame: dict[str, Any] = {"cmd": name, "val": value}
        if target is not None:
            frame["id"] = target
        if wait:
            return await self._request(frame, hint=name)
        await self._send(frame)
