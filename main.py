"""
FastAPI应用主入口 - 中继服务
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.middleware import RequestIDMiddleware
from api.routes import relay as relay_routes
from api.routes import ws as ws_routes
from application.services.realtime_service import RelayService
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.realtime.connection_manager import ConnectionRegistry
from infrastructure.realtime.event_hub import InMemoryEventHub
from shared.protocol import PROTOCOL_VERSION


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def build_relay_service() -> RelayService:
    """每个进程一个注册表 / 事件中心 / 中继服务实例"""
    registry = ConnectionRegistry(optimize_sending=settings.relay.optimize_sending)
    events = InMemoryEventHub()
    return RelayService(registry=registry, events=events, config=settings.relay)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    relay = build_relay_service()
    app.state.relay_service = relay
    app.state.relay_events = relay.events
    logger.info(
        "relay_initialized",
        protocol_version=PROTOCOL_VERSION,
        optimize_sending=settings.relay.optimize_sending,
        max_users=settings.relay.max_users,
    )

    yield

    # 关闭时断开所有连接
    for conn in relay.users:
        await relay.kick(conn, code=1001)
    await relay.events.aclose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Room-scoped realtime relay broker",
)

app.add_middleware(RequestIDMiddleware)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(relay_routes.router, prefix="/api/v1")
app.include_router(ws_routes.router, prefix="/api/v1")
# 兼容直接连接根路径的客户端
app.add_api_websocket_route("/", ws_routes.websocket_endpoint)


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy", "protocol_version": PROTOCOL_VERSION})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
