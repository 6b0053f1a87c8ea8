"""
统一响应格式定义（HTTP 管理接口）
"""
from typing import Any, Optional, Generic, TypeVar
from pydantic import BaseModel, Field, field_serializer
from datetime import datetime, timezone
from shared.codes import StatusCode, status_name


T = TypeVar("T")


class ErrorDetail(BaseModel):
    """错误详情"""
    type: str
    details: Optional[dict] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer('timestamp')
    def serialize_timestamp(self, timestamp: datetime) -> str:
        """序列化时间戳为 UTC ISO8601，统一使用 Z 结尾"""
        ts = timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        else:
            ts = ts.astimezone(timezone.utc)
        return ts.isoformat().replace("+00:00", "Z")


class Response(BaseModel, Generic[T]):
    """统一响应模型，code 复用中继状态码"""
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


def success_response(
    data: Any = None,
    message: Optional[str] = None,
    code: int = StatusCode.OK
) -> Response:
    """
    创建成功响应

    Args:
        data: 返回数据
        message: 成功消息，默认为状态码名称
        code: 状态码
    """
    return Response(
        code=code,
        message=message or status_name(code),
        data=data,
        error=None
    )


def error_response(
    code: int,
    message: str,
    error_type: str = "RelayError",
    details: Optional[dict] = None,
    request_id: Optional[str] = None
) -> Response:
    """创建错误响应"""
    return Response(
        code=code,
        message=message,
        data=None,
        error=ErrorDetail(
            type=error_type,
            details=details,
            request_id=request_id
        )
    )
