"""
CodeBlocking 后端入口

FastAPI 提供健康检查等 HTTP 接口，Socket.IO 提供终端通道：
- 输入事件: terminal:create / terminal:input / terminal:resize / disconnect
- 输出事件: terminal:ready / terminal:output / terminal:exit / terminal:error
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from codeblocking import __version__
from codeblocking.config import get_config
from codeblocking.sandbox import ContainerManager, SandboxConfig, TerminalSessionManager
from codeblocking.utils import get_logger, setup_logging
from codeblocking.workspace import WorkspaceManager

logger = get_logger("codeblocking.server")


class SocketIOChannel:
    """把一个 Socket.IO 连接包装成终端管理器使用的 channel"""

    def __init__(self, sio: socketio.AsyncServer, sid: str):
        self.sio = sio
        self.sid = sid

    async def emit(self, event: str, data: dict) -> None:
        await self.sio.emit(event, data, to=self.sid)


def register_terminal_handlers(sio: socketio.AsyncServer, terminals: TerminalSessionManager) -> None:
    """注册终端相关的 Socket.IO 事件处理函数"""

    @sio.event
    async def connect(sid, environ, auth=None):
        auth = auth if isinstance(auth, dict) else {}
        await sio.save_session(sid, {
            "user_id": str(auth.get("userId") or "anonymous"),
            "environment": auth.get("environment"),
        })
        logger.info(f"Terminal socket connected: {sid}")

    @sio.on("terminal:create")
    async def terminal_create(sid, data=None):
        data = data if isinstance(data, dict) else {}
        auth = await sio.get_session(sid)
        await terminals.on_create(
            SocketIOChannel(sio, sid),
            project_id=data.get("projectId"),
            user_id=auth.get("user_id", "anonymous"),
            environment=data.get("environment") or auth.get("environment"),
        )

    @sio.on("terminal:input")
    async def terminal_input(sid, data=None):
        if isinstance(data, dict):
            data = data.get("data")
        if not data:
            return
        await terminals.on_input(SocketIOChannel(sio, sid), data)

    @sio.on("terminal:resize")
    async def terminal_resize(sid, data=None):
        data = data if isinstance(data, dict) else {}
        cols, rows = data.get("cols"), data.get("rows")
        if not cols or not rows:
            return
        await terminals.on_resize(SocketIOChannel(sio, sid), cols, rows)

    @sio.event
    async def disconnect(sid, *args):
        await terminals.on_disconnect(SocketIOChannel(sio, sid))


async def shutdown(terminals: TerminalSessionManager, containers: ContainerManager) -> None:
    """先关闭终端，再清理容器，避免向正在销毁的容器写入"""
    logger.info("Shutting down...")
    await terminals.cleanup_all()
    await containers.cleanup_all()


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str
    timestamp: str
    terminals: int
    containers: int


def create_app(
    config: Optional[dict] = None,
    containers: Optional[ContainerManager] = None,
    terminals: Optional[TerminalSessionManager] = None,
    initialize_docker: bool = True,
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        config: 配置字典，默认读取 config.yaml
        containers: 容器管理器，测试时可替换
        terminals: 终端管理器，测试时可替换
        initialize_docker: 启动时是否检查 Docker 并清理孤儿容器

    Returns:
        FastAPI 应用，Socket.IO 服务挂在 app.state.sio 上
    """
    config = config or get_config()
    server_config = config.get("server", {})

    if containers is None:
        containers = ContainerManager(SandboxConfig.from_dict(config.get("sandbox", {})))
    if terminals is None:
        workspace = WorkspaceManager(root=config.get("workspace", {}).get("root"))
        terminals = TerminalSessionManager(containers, workspace=workspace)

    shutdown_timeout = server_config.get("shutdown_timeout", 30)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        if initialize_docker:
            await containers.initialize()

        yield

        # uvicorn 收到 SIGINT/SIGTERM 后进入这里
        try:
            await asyncio.wait_for(shutdown(terminals, containers), timeout=shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Cleanup did not finish within {shutdown_timeout}s")

    app = FastAPI(
        title="CodeBlocking Backend",
        description="浏览器 IDE 的容器与终端服务",
        version=__version__,
        lifespan=lifespan
    )

    frontend_url = server_config.get("frontend_url", "http://localhost:3000")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=[frontend_url],
    )
    register_terminal_handlers(sio, terminals)

    app.state.sio = sio
    app.state.containers = containers
    app.state.terminals = terminals

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """健康检查"""
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat(),
            terminals=terminals.get_active_session_count(),
            containers=len(containers.registry),
        )

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "service": "CodeBlocking Backend",
            "version": __version__,
            "endpoints": {
                "health": "GET /health",
                "terminal": "Socket.IO /socket.io",
            }
        }

    return app


def create_asgi_app(config: Optional[dict] = None) -> socketio.ASGIApp:
    """FastAPI 应用与 Socket.IO 合并后的 ASGI 应用"""
    app = create_app(config)
    return socketio.ASGIApp(app.state.sio, other_asgi_app=app)


def main() -> None:
    import uvicorn

    config = get_config()
    server_config = config.get("server", {})
    setup_logging(server_config.get("log_level", "INFO"))

    uvicorn.run(
        create_asgi_app(config),
        host=server_config.get("host", "127.0.0.1"),
        port=server_config.get("port", 3001),
        log_level=str(server_config.get("log_level", "info")).lower(),
    )


if __name__ == "__main__":
    main()
