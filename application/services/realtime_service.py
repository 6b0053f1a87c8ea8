"""Application service for the relay protocol.

Owns the command dispatcher: routes every inbound frame of a connection
to a built-in protocol operation or to the custom command table,
enforces the handshake precondition, and keeps room memberships and
their notifications consistent. Socket I/O is delegated to the
ConnectionRegistry, room fan-out to the BroadcastEngine.
"""
from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from application.ports.realtime import CommandHandler, RelayEventPort, RelayTransport
from application.services.broadcast_service import BroadcastEngine
from core.config import RelaySettings, settings
from core.logging_config import get_logger
from domain.common.exceptions import CommandNotFound, PayloadTypeError, ProtocolViolation
from domain.connection.entity import Connection
from domain.connection.events import GlobalMessagePosted, UserJoined, UserLeft
from infrastructure.realtime.connection_manager import ConnectionRegistry
from shared.codes import StatusCode
from shared.protocol import (
    BUILTIN_COMMANDS,
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
    CMD_UNLINK,
    DEFAULT_ROOM,
    PROTOCOL_VERSION,
    ULIST_ADD,
    ULIST_REMOVE,
    CommandFrame,
    decode_frame,
    encode_frame,
    message_frame,
    status_frame,
    ulist_frame,
    value_frame,
)


logger = get_logger(__name__)

# Close code used when the stream can no longer be trusted
CLOSE_UNSUPPORTED_DATA = 1003
# Close code used when the broker is full
CLOSE_TRY_AGAIN_LATER = 1013

_Builtin = Callable[[Connection, CommandFrame], Awaitable[Optional[object]]]


class RelayService:
    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        events: RelayEventPort,
        config: Optional[RelaySettings] = None,
        server_version: str = PROTOCOL_VERSION,
    ) -> None:
        cfg = config or settings.relay
        self._registry = registry
        self._engine = BroadcastEngine(registry)
        self._events = events
        self._commands: Dict[str, CommandHandler] = {}
        self._builtins: Dict[str, _Builtin] = {
            CMD_HANDSHAKE: self._handle_handshake,
            CMD_SETID: self._handle_setid,
            CMD_LINK: self._handle_link,
            CMD_UNLINK: self._handle_unlink,
            CMD_GMSG: self._handle_gmsg,
            CMD_GVAR: self._handle_gvar,
            CMD_PMSG: self._handle_pmsg,
            CMD_PVAR: self._handle_pvar,
        }
        self.server_version = server_version
        self.motd: str = cfg.motd
        self.max_users: int = cfg.max_users
        self.report_ip: bool = cfg.report_ip
        self.max_frame_bytes: int = cfg.max_frame_bytes
        # Last value seen on gmsg
        self.global_message: Any = ""

    # -------------------- public surface --------------------
    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def events(self) -> RelayEventPort:
        return self._events

    @property
    def users(self) -> List[Connection]:
        return self._registry.all()

    @property
    def commands(self) -> Dict[str, CommandHandler]:
        return dict(self._commands)

    def rooms(self) -> List[str]:
        return self._registry.rooms()

    def members(self, room: str) -> List[dict[str, Any]]:
        return self._engine.user_list(room)

    def register_command(self, name: str, handler: CommandHandler) -> None:
        """Expose ``handler(connection, value, target_id)`` under command ``name``."""
        if name in BUILTIN_COMMANDS:
            raise ValueError(f"'{name}' is a built-in command and cannot be overridden")
        if not callable(handler):
            raise TypeError("command handler must be callable")
        self._commands[name] = handler
        logger.info("custom_command_registered", command=name)

    def unregister_command(self, name: str) -> None:
        self._commands.pop(name, None)

    def command(self, name: str):
        """Decorator form of ``register_command``."""
        def decorator(fn: CommandHandler) -> CommandHandler:
            self.register_command(name, fn)
            return fn
        return decorator

    # -------------------- connection lifecycle --------------------
    async def connect(self, transport: RelayTransport, remote_address: Optional[str] = None) -> Optional[Connection]:
        """Register a freshly accepted socket; returns None when the broker is full."""
        conn: Optional[Connection] = None
        async with self._registry.lock:
            if self.max_users < 0 or len(self._registry) < self.max_users:
                conn = Connection(remote_address=remote_address)
                self._registry.add(conn, transport)
        if conn is None:
            logger.warning("ws_refused_full", remote=remote_address, max_users=self.max_users)
            try:
                await transport.send_text(encode_frame(status_frame(StatusCode.REFUSED)))
                await transport.close(code=CLOSE_TRY_AGAIN_LATER)
            except Exception as exc:  # pragma: no cover
                logger.warning("ws_refuse_failed", error=str(exc))
            return None
        logger.info("ws_connected", connection_id=conn.connection_id, public_id=conn.public_id, remote=remote_address)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        """Drop a connection and tell the members of its rooms. Idempotent."""
        async with self._registry.lock:
            removed = self._registry.remove(conn)
            if removed is None:
                return
            rooms = list(removed.rooms)
            user_obj = removed.to_user_object()
            for room in rooms:
                await self._engine.broadcast(ulist_frame(ULIST_REMOVE, user_obj), [room])
        logger.info("ws_disconnected", connection_id=conn.connection_id, rooms_left=len(rooms))
        await self._events.publish(UserLeft(connection=conn, rooms=rooms))

    async def kick(self, conn: Connection, code: int = 1000) -> None:
        await self._registry.close(conn, code=code)
        await self.disconnect(conn)

    # -------------------- dispatch --------------------
    async def handle_frame(self, conn: Connection, raw: str | bytes) -> bool:
        """Process one inbound frame.

        Returns False once the connection is gone and reading should stop.
        """
        if conn not in self._registry:
            return False
        try:
            command = self._parse(conn, raw)
        except ProtocolViolation as exc:
            if not exc.fatal:
                # Malformed input before the handshake is ignored like any other command
                if conn.is_handshaked:
                    await self._reply(conn, exc.code, exc.listener)
                return True
            logger.warning("relay_frame_malformed", connection_id=conn.connection_id)
            await self._reply(conn, exc.code)
            await self._registry.close(conn, code=CLOSE_UNSUPPORTED_DATA)
            await self.disconnect(conn)
            return False

        if command is None:
            return True
        logger.debug("relay_command", connection_id=conn.connection_id, cmd=command.cmd)

        builtin = self._builtins.get(command.cmd or "")
        if builtin is not None:
            async with self._registry.lock:
                try:
                    event = await builtin(conn, command)
                except PayloadTypeError as exc:
                    event = None
                    await self._reply(conn, exc.code, command.listener)
            if event is not None:
                await self._events.publish(event)
            return True

        try:
            await self._run_custom(conn, command)
        except CommandNotFound as exc:
            await self._reply(conn, exc.code, command.listener)
        return True

    def _parse(self, conn: Connection, raw: str | bytes) -> Optional[CommandFrame]:
        """Turn a raw frame into a command.

        Returns None for frames that must be dropped silently (anything but
        a handshake before the handshake completed).
        """
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
        if not text or not text.strip():
            raise ProtocolViolation(StatusCode.EMPTY_PACKET, "empty frame")
        if len(text.encode("utf-8")) > self.max_frame_bytes:
            raise ProtocolViolation(StatusCode.TOO_LARGE, "frame exceeds max_frame_bytes")
        try:
            data = decode_frame(text)
        except ValueError:
            raise ProtocolViolation(StatusCode.JSON_ERROR, "frame is not valid JSON", fatal=True) from None

        cmd = data.get("cmd") if isinstance(data, dict) else None
        if not conn.is_handshaked and cmd != CMD_HANDSHAKE:
            logger.debug("relay_dropped_before_handshake", connection_id=conn.connection_id, cmd=cmd)
            return None
        listener = data.get("listener") if isinstance(data, dict) else None
        if not cmd or not isinstance(cmd, str):
            raise ProtocolViolation(StatusCode.SYNTAX, "missing 'cmd'", listener=listener)
        try:
            return CommandFrame.model_validate(data)
        except ValidationError:
            raise ProtocolViolation(StatusCode.SYNTAX, "invalid command frame", listener=listener) from None

    async def _run_custom(self, conn: Connection, command: CommandFrame) -> None:
        handler = self._commands.get(command.cmd or "")
        if handler is None:
            raise CommandNotFound(command.cmd)
        try:
            result = handler(conn, command.val, command.id or None)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("custom_command_failed", command=command.cmd, error=str(exc), exc_info=True)
            await self._reply(conn, StatusCode.INTERNAL_ERROR, command.listener)

    async def _reply(self, conn: Connection, code: int, listener: Any = None, val: Any = None) -> bool:
        return await self._registry.send(conn, status_frame(code, listener, val))

    # -------------------- built-in commands --------------------
    async def _handle_handshake(self, conn: Connection, command: CommandFrame) -> Optional[object]:
        if conn.is_handshaked:
            await self._reply(conn, StatusCode.REFUSED, command.listener)
            return None
        conn.complete_handshake(command.val)
        if self.report_ip:
            await self._engine.send(conn, value_frame(CMD_CLIENT_IP, conn.remote_address))
        await self._engine.send(conn, value_frame(CMD_SERVER_VERSION, self.server_version))
        if self.motd:
            await self._engine.send(conn, value_frame(CMD_MOTD, self.motd))
        await self._engine.send(conn, value_frame(CMD_CLIENT_OBJ, conn.to_client_object()))
        await self._engine.send_user_list(conn, DEFAULT_ROOM)
        await self._reply(conn, StatusCode.OK, command.listener)
        await self._engine.broadcast(ulist_frame(ULIST_ADD, conn.to_user_object()), [DEFAULT_ROOM], exclude=conn)
        return UserJoined(connection=conn)

    async def _handle_setid(self, conn: Connection, command: CommandFrame) -> None:
        if not isinstance(command.val, str) or not command.val:
            raise PayloadTypeError(CMD_SETID, "a non-empty string")
        conn.set_username(command.val)
        for room in conn.rooms:
            await self._engine.push_user_list(room)
        await self._reply(conn, StatusCode.OK, command.listener, conn.to_client_object())

    async def _handle_link(self, conn: Connection, command: CommandFrame) -> None:
        rooms = command.val
        if isinstance(rooms, str):
            rooms = [rooms]
        if not isinstance(rooms, list) or not rooms or not all(isinstance(r, str) and r for r in rooms):
            raise PayloadTypeError(CMD_LINK, "a non-empty list of room names")
        previous = self._registry.link(conn, rooms)
        await self._engine.push_user_list(DEFAULT_ROOM)
        for room in previous:
            if room != DEFAULT_ROOM and not conn.in_room(room):
                await self._engine.push_user_list(room)
        for room in conn.rooms:
            if room != DEFAULT_ROOM and room not in previous:
                await self._engine.push_user_list(room, exclude=conn)
        for room in conn.rooms:
            await self._engine.send_user_list(conn, room)
        await self._reply(conn, StatusCode.OK, command.listener)

    async def _handle_unlink(self, conn: Connection, command: CommandFrame) -> None:
        previous = self._registry.unlink(conn)
        for room in previous:
            if room != DEFAULT_ROOM:
                await self._engine.push_user_list(room)
        await self._engine.push_user_list(DEFAULT_ROOM)
        await self._reply(conn, StatusCode.OK, command.listener)

    async def _handle_gmsg(self, conn: Connection, command: CommandFrame) -> Optional[object]:
        rooms = list(conn.rooms)
        self.global_message = command.val
        await self._engine.broadcast(message_frame(CMD_GMSG, command.val), rooms)
        if command.listener is not None:
            await self._reply(conn, StatusCode.OK, command.listener)
        return GlobalMessagePosted(connection=conn, value=command.val, rooms=rooms)

    async def _handle_gvar(self, conn: Connection, command: CommandFrame) -> None:
        if not isinstance(command.name, str):
            raise PayloadTypeError(CMD_GVAR, "a string 'name'")
        await self._engine.broadcast(message_frame(CMD_GVAR, command.val, name=command.name), conn.rooms)
        if command.listener is not None:
            await self._reply(conn, StatusCode.OK, command.listener)

    async def _handle_pmsg(self, conn: Connection, command: CommandFrame) -> None:
        await self._deliver_private(conn, command, CMD_PMSG)

    async def _handle_pvar(self, conn: Connection, command: CommandFrame) -> None:
        if not isinstance(command.name, str):
            raise PayloadTypeError(CMD_PVAR, "a string 'name'")
        await self._deliver_private(conn, command, CMD_PVAR)

    async def _deliver_private(self, conn: Connection, command: CommandFrame, cmd: str) -> None:
        if command.id is None or command.id == "":
            await self._reply(conn, StatusCode.ID_REQUIRED, command.listener)
            return
        target = self._registry.find_private_target(str(command.id), conn.rooms)
        if target is None:
            logger.debug("private_target_not_found", connection_id=conn.connection_id, target=command.id)
            return
        shared = target.shared_rooms(conn.rooms)
        frame = message_frame(
            cmd,
            command.val,
            name=command.name if cmd == CMD_PVAR else None,
            origin=conn.to_user_object(),
            rooms=shared[0],
        )
        await self._engine.send(target, frame)
        if command.listener is not None:
            await self._reply(conn, StatusCode.OK, command.listener)

    # -------------------- server originated --------------------
    async def send_global_message(self, message: Any, rooms: Optional[Iterable[str]] = None) -> int:
        targets = list(rooms) if rooms is not None else [DEFAULT_ROOM]
        async with self._registry.lock:
            self.global_message = message
            delivered = await self._engine.broadcast(message_frame(CMD_GMSG, message), targets)
        await self._events.publish(GlobalMessagePosted(connection=None, value=message, rooms=targets))
        return delivered

    async def send_global_variable(self, name: str, value: Any, rooms: Optional[Iterable[str]] = None) -> int:
        async with self._registry.lock:
            return await self._engine.broadcast(message_frame(CMD_GVAR, value, name=name), rooms)

    async def send_private_message(self, conn: Connection, message: Any) -> bool:
        return await self._engine.send(conn, message_frame(CMD_PMSG, message, rooms=conn.rooms[0]))

    async def send_private_variable(self, conn: Connection, name: str, value: Any) -> bool:
        return await self._engine.send(conn, message_frame(CMD_PVAR, value, name=name, rooms=conn.rooms[0]))
