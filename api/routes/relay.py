"""
中继管理接口 - 供宿主应用查看连接、房间并从服务端发起广播
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator

from api.dependencies import get_relay_service
from application.services.realtime_service import RelayService
from core.response import Response, success_response
from domain.common.exceptions import RelayException
from shared.codes import StatusCode
from shared.protocol import DEFAULT_ROOM


router = APIRouter(prefix="/relay", tags=["Relay"])


class ConnectionView(BaseModel):
    id: str
    username: Optional[str] = None
    rooms: list[str]
    handshaked: bool
    remote_address: Optional[str] = None


class BroadcastRequest(BaseModel):
    """服务端广播：name 为空时发送 gmsg，否则发送 gvar"""
    val: Any = None
    name: Optional[str] = None
    rooms: list[str] = Field(default_factory=lambda: [DEFAULT_ROOM])

    @model_validator(mode="after")
    def _rooms_not_empty(self):
        if not self.rooms:
            raise ValueError("rooms must not be empty")
        return self


@router.get("/users", response_model=Response[list[ConnectionView]])
async def list_users(relay: RelayService = Depends(get_relay_service)):
    """列出当前所有连接"""
    views = [
        ConnectionView(
            id=c.public_id,
            username=c.username,
            rooms=list(c.rooms),
            handshaked=c.is_handshaked,
            remote_address=c.remote_address,
        )
        for c in relay.users
    ]
    return success_response(data=views)


@router.get("/rooms")
async def list_rooms(relay: RelayService = Depends(get_relay_service)):
    return success_response(data=relay.rooms())


@router.get("/rooms/{room}")
async def room_members(room: str, relay: RelayService = Depends(get_relay_service)):
    """房间成员列表；房间没有成员时视为不存在"""
    members = relay.members(room)
    if not members:
        raise RelayException(
            code=StatusCode.ROOM_NOT_JOINED,
            message=f"Room '{room}' has no members",
            error_type="RoomNotFound",
            details={"room": room},
        )
    return success_response(data=members)


@router.post("/broadcast")
async def broadcast(body: BroadcastRequest, relay: RelayService = Depends(get_relay_service)):
    if body.name is None:
        delivered = await relay.send_global_message(body.val, body.rooms)
    else:
        delivered = await relay.send_global_variable(body.name, body.val, body.rooms)
    return success_response(data={"delivered": delivered})
