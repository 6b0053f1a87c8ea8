"""WebSocket route for the relay protocol.

Each accepted socket becomes one Connection; every text frame is handed
to the RelayService until the peer goes away or the service closes the
connection (malformed JSON, kick).
"""
from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.dependencies import get_relay_service_from_ws
from core.logging_config import bind_connection_context, clear_connection_context, get_logger


logger = get_logger(__name__)


router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    relay = get_relay_service_from_ws(ws)
    await ws.accept()
    remote = ws.client.host if ws.client else None

    conn = await relay.connect(ws, remote_address=remote)
    if conn is None:
        return
    bind_connection_context(connection_id=conn.connection_id, public_id=conn.public_id, remote=remote)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            if not await relay.handle_frame(conn, raw):
                break
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.error("ws_error", error=str(exc), exc_info=True)
    finally:
        await relay.disconnect(conn)
        clear_connection_context()
