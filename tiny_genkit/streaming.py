"""流式结果 - 一个生产者、多个独立消费者的增量通道"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

_CLOSED = object()


class Receiver:
    """
    通道的一个接收端

    每个接收端有自己的无界队列，慢消费者不会阻塞生产者，
    也不会影响其他接收端。
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._done = False

    def _put(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> 'Receiver':
        return self

    async def __anext__(self) -> Any:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item


class Channel:
    """
    增量通道

    - send: 生产者写入（同步，不会阻塞）
    - subscribe: 创建一个新的接收端，只会看到订阅之后写入的增量
    - close: 结束通道，所有接收端在读完已有增量后结束迭代
    """

    def __init__(self) -> None:
        self._receivers: list[Receiver] = []
        self._closed = False
        self._error: Optional[BaseException] = None
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def subscribe(self) -> Receiver:
        receiver = Receiver()
        if self._closed:
            receiver._put(_CLOSED)
        else:
            self._receivers.append(receiver)
        return receiver

    def send(self, chunk: Any) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on a closed channel")
        self.sent += 1
        for receiver in self._receivers:
            receiver._put(chunk)

    def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        for receiver in self._receivers:
            receiver._put(_CLOSED)


class StreamingResult(Generic[T]):
    """
    一次流式执行的两个视图

    - stream: 增量序列（async for chunk in result.stream）
    - output: 最终结果（await result.output）

    两个视图对应同一次执行；无论读取多少次都只执行一次。
    执行失败时增量序列正常结束，output 抛出同一个异常。
    """

    def __init__(self, channel: Channel, task: 'asyncio.Future[T]'):
        self._channel = channel
        self._task = task
        self._stream = channel.subscribe()
        task.add_done_callback(_consume_exception)

    @property
    def stream(self) -> Receiver:
        return self._stream

    @property
    def output(self) -> 'asyncio.Future[T]':
        return self._task

    @property
    def done(self) -> bool:
        return self._task.done()

    def subscribe(self) -> Receiver:
        """附加一个独立的接收端（例如 Reflection 通道）"""
        return self._channel.subscribe()

    def cancel(self) -> None:
        self._task.cancel()

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._stream

    def __await__(self):
        return self._task.__await__()


def _consume_exception(task: 'asyncio.Future[Any]') -> None:
    # 消费者只读增量、不等待 output 时，避免 "exception was never retrieved" 警告
    if not task.cancelled():
        task.exception()


def run_streaming(
    producer: Callable[[Callable[[Any], None]], Awaitable[T]],
) -> StreamingResult[T]:
    """
    以流式方式启动一次执行

    Args:
        producer: 接收 send 函数、返回最终结果的协程工厂

    Returns:
        StreamingResult（必须在事件循环中调用）
    """
    channel = Channel()

    async def _run() -> T:
        try:
            result = await producer(channel.send)
        except BaseException as e:
            channel.close(error=e)
            raise
        channel.close()
        return result

    task = asyncio.ensure_future(_run())
    return StreamingResult(channel, task)
