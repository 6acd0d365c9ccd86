"""执行上下文 - 单次 Action 调用期间携带的注册表、取消信号和流式输出通道"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

from .errors import CancellationError

if TYPE_CHECKING:
    from .registry import Registry
    from .tracing import TraceData

logger = logging.getLogger(__name__)

T = TypeVar('T')

ChunkSink = Callable[[Any], None]


class CancellationSignal:
    """
    取消信号

    每次调用都持有一个从调用方派生的信号：
    - 父信号取消时，所有子信号随之取消
    - 子信号取消不影响父信号
    - 可以设置超时，到期自动取消

    信号本身不会打断正在执行的代码，需要调用方在挂起点检查
    （raise_if_cancelled）或者用 guard() 包裹一个可取消的协程。
    """

    def __init__(self, parent: Optional['CancellationSignal'] = None):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: list[Callable[[str], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._detach: Optional[Callable[[], None]] = None
        if parent is not None:
            self._detach = parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """取消（幂等）"""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("[CancellationSignal] callback failed")

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """
        注册取消回调

        如果已经取消，回调立即执行。

        Returns:
            用于注销回调的函数
        """
        if self._cancelled:
            callback(self._reason or "cancelled")
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def child(self, timeout: Optional[float] = None) -> 'CancellationSignal':
        """派生子信号"""
        signal = CancellationSignal(parent=self)
        if timeout is not None:
            signal.set_timeout(timeout)
        return signal

    def set_timeout(self, seconds: float) -> None:
        """设置超时（必须在事件循环中调用）"""
        if self._cancelled:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, f"timeout after {seconds}s")

    def release(self) -> None:
        """从父信号上解除挂载（调用结束时释放）"""
        if self._detach is not None:
            self._detach()
            self._detach = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(f"Invocation cancelled: {self._reason}")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        以可取消的方式等待一个协程

        信号触发时取消底层任务，并抛出 CancellationError。
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        remove = self.add_callback(lambda _reason: task.cancel())
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled:
                raise CancellationError(f"Invocation cancelled: {self._reason}") from None
            raise
        finally:
            remove()


@dataclass
class ActionContext:
    """
    单次 Action 调用的临时上下文

    核心设计理念:
    - 上下文是显式传递的，没有隐式的"当前注册表"
    - 嵌套调用通过 context= 参数把上下文传给子调用
    - 子调用派生自己的取消信号，共享同一个 trace
    """

    registry: 'Registry'
    signal: CancellationSignal = field(default_factory=CancellationSignal)

    # 追踪信息
    invocation_id: str = field(default_factory=lambda: str(uuid4()))
    trace: Optional['TraceData'] = None
    span_id: Optional[str] = None

    # 流式输出（None 表示非流式调用）
    on_chunk: Optional[ChunkSink] = None

    # 调用方附带的任意信息（例如 HTTP 请求头）
    metadata: dict[str, Any] = field(default_factory=dict)

    start_time: float = field(default_factory=time.time)

    @property
    def is_streaming(self) -> bool:
        return self.on_chunk is not None

    @property
    def trace_id(self) -> Optional[str]:
        return self.trace.trace_id if self.trace else None

    @property
    def elapsed_time(self) -> float:
        """获取已用时间（秒）"""
        return time.time() - self.start_time

    def send_chunk(self, chunk: Any) -> None:
        """向调用方推送一个增量结果（非流式调用时忽略）"""
        if self.on_chunk is not None:
            self.on_chunk(chunk)
