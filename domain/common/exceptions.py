"""领域层异常定义，供领域、应用与基础设施使用。

每个异常携带一个中继状态码（StatusCode），便于直接映射为 statuscode 帧。
"""
from __future__ import annotations

from typing import Any, Optional
from shared.codes import StatusCode, status_name


class RelayException(Exception):
    """中继异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "RelayError",
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        super().__init__(self.message)


class ProtocolViolation(RelayException):
    """Frame could not be interpreted; ``fatal`` frames close the connection."""

    def __init__(self, code: int, message: str, *, fatal: bool = False, listener: Any = None):
        super().__init__(
            code=code,
            message=message,
            error_type="ProtocolViolation",
            details={"fatal": fatal} if fatal else None,
        )
        self.fatal = fatal
        self.listener = listener


class PayloadTypeError(RelayException):
    def __init__(self, command: str, expected: str, listener: Any = None):
        super().__init__(
            code=StatusCode.DATATYPE,
            message=f"'{command}' expects {expected}",
            error_type="PayloadTypeError",
            details={"command": command, "expected": expected},
        )
        self.listener = listener


class CommandNotFound(RelayException):
    def __init__(self, command: Optional[str]):
        super().__init__(
            code=StatusCode.INVALID_COMMAND,
            message=f"Unknown command: {command}",
            error_type="CommandNotFound",
            details={"command": command},
        )


class StatusRejected(RelayException):
    """客户端：服务端以失败状态码（>100）回复了请求"""

    def __init__(self, code: int, listener: Any = None):
        super().__init__(
            code=code,
            message=f"Request rejected by server: {int(code)} ({status_name(code)})",
            error_type="StatusRejected",
            details={"listener": listener} if listener is not None else None,
        )
        self.listener = listener


class RequestTimeout(RelayException):
    """客户端：等待状态回复超时"""

    def __init__(self, listener: Any, timeout: float):
        super().__init__(
            code=StatusCode.INTERNAL_ERROR,
            message=f"No status reply for '{listener}' within {timeout}s",
            error_type="RequestTimeout",
            details={"listener": listener, "timeout": timeout},
        )
        self.listener = listener


class HandshakeError(RelayException):
    def __init__(self, message: str, code: int = StatusCode.REFUSED):
        super().__init__(code=code, message=message, error_type="HandshakeError")


class ServerVersionError(HandshakeError):
    def __init__(self, version: Optional[str], minimum: str):
        super().__init__(
            f"Only servers at protocol version {minimum} or newer are supported (got {version})"
        )
        self.error_type = "ServerVersionError"
        self.details = {"version": version, "minimum": minimum}


class ConnectionLost(RelayException):
    """客户端：连接已关闭或尚未建立"""

    def __init__(self, message: str = "Not connected to a relay server"):
        super().__init__(code=StatusCode.REFUSED, message=message, error_type="ConnectionLost")


__all__ = [
    "RelayException",
    "ProtocolViolation",
    "PayloadTypeError",
    "CommandNotFound",
    "StatusRejected",
    "RequestTimeout",
    "HandshakeError",
    "ServerVersionError",
    "ConnectionLost",
]
