"""
API依赖项 - 从应用状态获取中继服务
"""
from fastapi import Request, WebSocket

from application.services.realtime_service import RelayService


def _service_from_state(state) -> RelayService:
    svc = getattr(state, "relay_service", None)
    if svc is None:
        raise RuntimeError("Relay service not initialized. Ensure lifespan sets app.state.relay_service.")
    return svc


async def get_relay_service(request: Request) -> RelayService:
    return _service_from_state(request.app.state)


def get_relay_service_from_ws(ws: WebSocket) -> RelayService:
    return _service_from_state(ws.app.state)
