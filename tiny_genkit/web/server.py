"""在已有事件循环中运行的 uvicorn 服务"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import uvicorn
from typing_extensions import override

from ..errors import AddressInUseError

logger = logging.getLogger(__name__)


class EmbeddedServer(uvicorn.Server):
    """
    不接管进程信号的 uvicorn.Server

    进程的 SIGTERM/SIGINT 由宿主统一处理（见 genkit.install_shutdown_handlers），
    这里不安装 uvicorn 自己的信号处理器。
    """

    @override
    def install_signal_handlers(self) -> None:
        pass

    @override
    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    """
    预先绑定监听地址

    Raises:
        AddressInUseError: 地址已被占用
    """
    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise AddressInUseError(
                f"Address {host}:{port} is already in use",
                details={'host': host, 'port': port},
            ) from e
        raise
    sock.set_inheritable(True)
    return sock


class ServerHandle:
    """
    一个后台运行的 HTTP 服务

    start() 绑定地址并等待服务就绪；stop() 先请求优雅退出，
    超时后强制退出。
    """

    def __init__(self, app: Any, host: str, port: int, name: str = "server"):
        self.app = app
        self.host = host
        self.port = port
        self.name = name
        self.server: Optional[EmbeddedServer] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> None:
        """
        Raises:
            AddressInUseError: 地址已被占用
        """
        sock = bind_socket(self.host, self.port)
        # port=0 时使用系统分配的端口
        self.port = sock.getsockname()[1]
        config = uvicorn.Config(self.app, log_config=None, access_log=False, lifespan='off')
        self.server = EmbeddedServer(config)
        self._task = asyncio.ensure_future(self.server.serve(sockets=[sock]))

        while not self.server.started:
            if self._task.done():
                # 启动失败，抛出原始异常
                await self._task
                raise RuntimeError(f"{self.name} exited during startup")
            await asyncio.sleep(0.01)
        logger.info(f"[{self.name}] listening on {self.url}")

    async def stop(self, timeout: float = 5.0) -> None:
        if self.server is None or self._task is None:
            return
        task = self._task
        self.server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] did not stop within {timeout}s, forcing exit")
            self.server.force_exit = True
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info(f"[{self.name}] stopped")
