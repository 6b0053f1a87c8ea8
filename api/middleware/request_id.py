"""
Request ID 中间件
为 HTTP 管理接口生成或透传追踪ID，并通过 structlog contextvars 传递给日志系统
"""
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog

from core.logging_config import get_logger


logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    WebSocket 连接不经过此中间件，连接维度的上下文由 ws 路由自行绑定。
    """

    HEADER_NAME = "X-Request-ID"
    SKIP_PATHS = {"/health"}

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers[self.HEADER_NAME] = request_id
        if request.url.path not in self.SKIP_PATHS:
            logger.info("request_completed", status_code=response.status_code, duration_ms=round(duration * 1000, 2))
        return response
