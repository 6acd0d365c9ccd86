"""Action - 运行时的原子调用单元"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from pydantic import PydanticUserError, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .context import ActionContext, CancellationSignal, ChunkSink
from .errors import GenkitError, ValidationError
from .streaming import StreamingResult, run_streaming
from .tracing import run_in_span, to_json_attr

if TYPE_CHECKING:
    from .registry import Registry

logger = logging.getLogger(__name__)

_ANY: TypeAdapter[Any] = TypeAdapter(Any)


class ActionKind(str, Enum):
    """Action 类型"""
    FLOW = 'flow'
    MODEL = 'model'
    TOOL = 'tool'
    EVALUATOR = 'evaluator'
    PROMPT = 'prompt'
    UTIL = 'util'
    CUSTOM = 'custom'


NextFn = Callable[..., Awaitable[Any]]
Middleware = Callable[[Any, ActionContext, NextFn], Awaitable[Any]]


def action_key(kind: ActionKind | str, name: str) -> str:
    """Action 的唯一键: /{kind}/{name}"""
    return f"/{ActionKind(kind).value}/{name}"


def parse_action_key(key: str) -> tuple[ActionKind, str]:
    """解析 /{kind}/{name}（name 本身可以包含 /）"""
    parts = key.lstrip('/').split('/', 1)
    if len(parts) != 2 or not parts[1]:
        raise ValueError(f"Invalid action key: '{key}'")
    return ActionKind(parts[0]), parts[1]


class Action:
    """
    Action - 带名称和输入/输出契约的可调用单元

    核心设计理念:
    - Action 注册后不可变，由持有它的 Registry 独占
    - 输入、输出、增量都由 pydantic TypeAdapter 校验
    - 处理函数签名: fn(input) 或 fn(input, ctx)；普通函数在线程中执行
    - middleware 按顺序包裹处理函数，第一个在最外层

    调用方式:
    - run(input): 等待最终结果
    - stream(input): 返回 StreamingResult（增量 + 最终结果）
    """

    def __init__(
        self,
        kind: ActionKind | str,
        name: str,
        fn: Callable[..., Any],
        *,
        description: str = "",
        input_schema: Any = Any,
        output_schema: Any = Any,
        stream_schema: Any = None,
        metadata: Optional[dict[str, Any]] = None,
        middleware: Optional[Sequence[Middleware]] = None,
    ):
        if not name:
            raise ValueError("Action name must not be empty")
        self.kind = ActionKind(kind)
        self.name = name
        self.fn = fn
        self.description = description
        self.input_schema = input_schema
        self.output_schema = output_schema
        self.stream_schema = stream_schema
        self.metadata = dict(metadata or {})
        self.middleware: tuple[Middleware, ...] = tuple(middleware or ())

        self._input_adapter = TypeAdapter(input_schema)
        self._output_adapter = TypeAdapter(output_schema)
        self._stream_adapter = TypeAdapter(stream_schema) if stream_schema is not None else None
        self._accepts_context = _accepts_context(fn)

        # 注册时由 Registry 设置
        self.registry: Optional['Registry'] = None

    @property
    def key(self) -> str:
        return action_key(self.kind, self.name)

    def __repr__(self) -> str:
        return f"Action({self.key})"

    # ==================== 契约校验 ====================

    def validate_input(self, value: Any) -> Any:
        return _validate(self._input_adapter, value, f"{self.key} input", "input")

    def validate_output(self, value: Any) -> Any:
        return _validate(self._output_adapter, value, f"{self.key} output", "output")

    def validate_chunk(self, value: Any) -> Any:
        if self._stream_adapter is None:
            return value
        return _validate(self._stream_adapter, value, f"{self.key} stream chunk", "output")

    def dump_output(self, value: Any) -> Any:
        """把输出转换为可 JSON 序列化的值"""
        return self._output_adapter.dump_python(value, mode='json', by_alias=True, exclude_none=True)

    def dump_chunk(self, value: Any) -> Any:
        adapter = self._stream_adapter or _ANY
        return adapter.dump_python(value, mode='json', by_alias=True, exclude_none=True)

    def describe(self) -> dict[str, Any]:
        """Action 描述（用于 Reflection 枚举）"""
        result = {
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'inputSchema': _json_schema(self._input_adapter),
            'outputSchema': _json_schema(self._output_adapter),
            'metadata': self.metadata,
        }
        if self._stream_adapter is not None:
            result['streamSchema'] = _json_schema(self._stream_adapter)
        return result

    # ==================== 执行 ====================

    async def run(
        self,
        input: Any = None,
        *,
        context: Optional[ActionContext] = None,
        registry: Optional['Registry'] = None,
        on_chunk: Optional[ChunkSink] = None,
        signal: Optional[CancellationSignal] = None,
        timeout: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
        telemetry: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        执行并等待最终结果

        Args:
            input: 输入（按 input_schema 校验）
            context: 调用方的上下文（嵌套调用时传入，继承注册表、信号和 trace）
            registry: 覆盖执行使用的注册表（例如子注册表）
            on_chunk: 增量回调（不传表示非流式调用）
            signal: 取消信号（默认从 context 派生）
            timeout: 超时秒数
            metadata: 调用方附带的信息
            telemetry: 传入时写入本次调用的 traceId

        Raises:
            ValidationError: 输入或输出不符合契约
            CancellationError: 调用被取消或超时
        """
        ctx = self._new_context(context, registry, on_chunk, signal, timeout, metadata)
        attributes = {
            'genkit:type': self.kind.value,
            'genkit:name': self.name,
            'genkit:input': to_json_attr(input),
        }
        try:
            ctx.signal.raise_if_cancelled()
            async with run_in_span(ctx, self.name, attributes) as span:
                if telemetry is not None:
                    telemetry['traceId'] = ctx.trace_id
                logger.debug(f"[Action {self.key}] START invocation_id={ctx.invocation_id}")
                validated = self.validate_input(input)
                output = await ctx.signal.guard(self._dispatch(validated, ctx))
                output = self.validate_output(output)
                span.attributes['genkit:output'] = to_json_attr(output)
                logger.debug(
                    f"[Action {self.key}] SUCCESS invocation_id={ctx.invocation_id} "
                    f"duration={ctx.elapsed_time:.2f}s"
                )
                return output
        except Exception as e:
            logger.debug(
                f"[Action {self.key}] FAILED invocation_id={ctx.invocation_id} "
                f"error={type(e).__name__}: {e} duration={ctx.elapsed_time:.2f}s"
            )
            raise
        finally:
            ctx.signal.release()

    def stream(
        self,
        input: Any = None,
        *,
        context: Optional[ActionContext] = None,
        registry: Optional['Registry'] = None,
        signal: Optional[CancellationSignal] = None,
        timeout: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
        telemetry: Optional[dict[str, Any]] = None,
    ) -> StreamingResult:
        """
        流式执行（必须在事件循环中调用）

        Returns:
            StreamingResult: stream 为增量序列，output 为最终结果
        """
        def producer(send: ChunkSink) -> Awaitable[Any]:
            return self.run(
                input,
                context=context,
                registry=registry,
                on_chunk=send,
                signal=signal,
                timeout=timeout,
                metadata=metadata,
                telemetry=telemetry,
            )

        return run_streaming(producer)

    # ==================== 内部方法 ====================

    def _new_context(
        self,
        parent: Optional[ActionContext],
        registry: Optional['Registry'],
        on_chunk: Optional[ChunkSink],
        signal: Optional[CancellationSignal],
        timeout: Optional[float],
        metadata: Optional[dict[str, Any]],
    ) -> ActionContext:
        if on_chunk is not None and self._stream_adapter is not None:
            sink = on_chunk
            on_chunk = lambda chunk: sink(self.validate_chunk(chunk))

        if parent is not None:
            base_signal = signal or parent.signal
            return ActionContext(
                registry=registry or parent.registry,
                signal=base_signal.child(timeout),
                trace=parent.trace,
                span_id=parent.span_id,
                on_chunk=on_chunk,
                metadata={**parent.metadata, **(metadata or {})},
            )

        owner = registry or self.registry
        if owner is None:
            raise GenkitError(f"Action {self.key} is not registered with a registry")
        base_signal = signal or CancellationSignal()
        return ActionContext(
            registry=owner,
            signal=base_signal.child(timeout),
            on_chunk=on_chunk,
            metadata=dict(metadata or {}),
        )

    async def _dispatch(self, input: Any, ctx: ActionContext) -> Any:
        """按顺序经过 middleware，最后调用处理函数"""

        async def call(index: int, value: Any, current: ActionContext) -> Any:
            if index < len(self.middleware):
                middleware = self.middleware[index]

                def next_fn(next_value: Any = value, next_ctx: Optional[ActionContext] = None) -> Awaitable[Any]:
                    return call(index + 1, next_value, next_ctx or current)

                return await middleware(value, current, next_fn)
            return await self._call_fn(value, current)

        return await call(0, input, ctx)

    async def _call_fn(self, input: Any, ctx: ActionContext) -> Any:
        if _is_async_callable(self.fn):
            if self._accepts_context:
                return await self.fn(input, ctx)
            return await self.fn(input)

        # 普通函数在线程中执行；增量先在工作线程中校验，再切回事件循环线程发送
        if ctx.on_chunk is not None:
            loop = asyncio.get_running_loop()
            sink = ctx.on_chunk

            def send_from_thread(chunk: Any) -> None:
                loop.call_soon_threadsafe(sink, self.validate_chunk(chunk))

            ctx.on_chunk = send_from_thread
        if self._accepts_context:
            result = await asyncio.to_thread(self.fn, input, ctx)
        else:
            result = await asyncio.to_thread(self.fn, input)
        if inspect.isawaitable(result):
            result = await result
        return result


# ==================== 辅助函数 ====================

def _validate(adapter: TypeAdapter, value: Any, what: str, source: str) -> Any:
    try:
        return adapter.validate_python(value)
    except PydanticValidationError as e:
        details = json.loads(e.json(include_url=False))
        raise ValidationError(
            f"Schema validation failed for {what}: {e.error_count()} error(s)",
            details=details,
            source=source,
        ) from e


def _json_schema(adapter: TypeAdapter) -> Optional[dict[str, Any]]:
    try:
        return adapter.json_schema()
    except PydanticUserError:
        return None


def _is_async_callable(fn: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, '__call__', None)
    return call is not None and inspect.iscoroutinefunction(call)


def _accepts_context(fn: Callable[..., Any]) -> bool:
    """处理函数是否接收第二个参数 ctx"""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return False
    positional = 0
    for param in sig.parameters.values():
        if param.kind == inspect.Parameter.VAR_POSITIONAL:
            return True
        if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2


def is_action(value: Any) -> bool:
    return isinstance(value, Action)
