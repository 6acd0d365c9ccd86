"""
Flow Server - 通过 HTTP 暴露 Flow

使用方式:
    ai = Genkit()
    greet = ai.define_flow("greet", lambda name: f"你好, {name}")

    server = FlowServer(lambda: ai.flows, port=3400)
    server.run()

    # curl -X POST localhost:3400/greet -d '{"data": "世界"}'
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, ClassVar, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..errors import PayloadTooLargeError, error_body
from .api import FlowSource, create_flow_router
from .server import ServerHandle

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3400
DEFAULT_MAX_BODY_SIZE = 5 * 1024 * 1024


def default_port() -> int:
    """$PORT 优先，否则 3400"""
    return int(os.environ.get('PORT') or DEFAULT_PORT)


def create_flow_app(
    flows: FlowSource,
    *,
    path_prefix: str = "",
    cors_origins: Sequence[str] = ("*",),
    max_body_size: int = DEFAULT_MAX_BODY_SIZE,
    title: str = "tiny_genkit Flow Server",
) -> FastAPI:
    """
    创建 Flow 服务的 FastAPI 应用

    Args:
        flows: Flow 列表，或返回 Flow 列表的函数
        path_prefix: 路径前缀
        cors_origins: 允许的跨域来源
        max_body_size: 请求体大小上限（字节），超过返回 413
    """
    app = FastAPI(title=title, description="tiny_genkit Flow API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get('content-length')
        if length is not None and length.isdigit() and int(length) > max_body_size:
            error = PayloadTooLargeError(f"Request body exceeds {max_body_size} bytes")
            return JSONResponse(error_body(error), status_code=error.http_status)
        return await call_next(request)

    # 没有 Content-Length 的请求（分块传输）由路由边读边计数
    app.include_router(create_flow_router(flows, path_prefix, max_body_size))
    return app


class FlowServer:
    """
    Flow 服务封装

    - start() / stop(): 在当前事件循环中后台运行（宿主使用）
    - run(): 阻塞运行（独立脚本使用）
    """

    _RUNNING: ClassVar[set['FlowServer']] = set()

    def __init__(
        self,
        flows: FlowSource,
        *,
        host: str = "0.0.0.0",
        port: Optional[int] = None,
        path_prefix: str = "",
        cors_origins: Sequence[str] = ("*",),
        max_body_size: int = DEFAULT_MAX_BODY_SIZE,
    ):
        self.app = create_flow_app(
            flows,
            path_prefix=path_prefix,
            cors_origins=cors_origins,
            max_body_size=max_body_size,
        )
        self._handle = ServerHandle(
            self.app,
            host,
            default_port() if port is None else port,
            name="FlowServer",
        )

    @property
    def host(self) -> str:
        return self._handle.host

    @property
    def port(self) -> int:
        return self._handle.port

    @property
    def url(self) -> str:
        return self._handle.url

    @property
    def running(self) -> bool:
        return self._handle.running

    async def start(self) -> None:
        """
        Raises:
            AddressInUseError: 端口被占用
        """
        await self._handle.start()
        FlowServer._RUNNING.add(self)

    async def stop(self, timeout: float = 5.0) -> None:
        """停止服务（等待进行中的请求完成，超时后强制退出）"""
        await self._handle.stop(timeout)
        FlowServer._RUNNING.discard(self)

    @classmethod
    async def stop_all(cls, timeout: float = 5.0) -> None:
        servers = list(cls._RUNNING)
        if not servers:
            return
        logger.info(f"[FlowServer] stopping {len(servers)} server(s)")
        results = await asyncio.gather(*(server.stop(timeout) for server in servers), return_exceptions=True)
        for server, result in zip(servers, results):
            if isinstance(result, Exception):
                logger.error(f"[FlowServer] failed to stop {server.url}: {result}", exc_info=result)

    def run(self, **kwargs: Any) -> None:
        """
        阻塞运行

        Args:
            **kwargs: 传递给 uvicorn.run 的其他参数
        """
        import uvicorn

        logger.info(f"[FlowServer] starting on {self.url}")
        uvicorn.run(self.app, host=self.host, port=self.port, log_config=None, **kwargs)
