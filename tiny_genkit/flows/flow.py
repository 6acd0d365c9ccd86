"""Flow - 面向调用方（HTTP、Reflection、直接调用）的 Action"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from pydantic_core import to_jsonable_python

from ..action import Action, ActionKind, Middleware, NextFn
from ..context import ActionContext, CancellationSignal, ChunkSink
from ..errors import error_body
from ..stores import FlowState
from ..streaming import StreamingResult

if TYPE_CHECKING:
    from ..registry import Registry

logger = logging.getLogger(__name__)


class Flow:
    """
    Flow - flow 类型 Action 的薄包装

    核心设计理念:
    - Flow 本身不保存任何执行状态，每次调用独立
    - 同一个 Flow 可以单次调用（run）或流式调用（stream）
    - 注册表配置了 FlowStateStore 时，每次调用记录一条 FlowState

    API:
    - run(input) -> output
    - stream(input) -> StreamingResult（stream 为增量，output 为最终结果）
    - flow(input): 等同于 run
    """

    def __init__(self, action: Action):
        self.action = action

    @property
    def name(self) -> str:
        return self.action.name

    @property
    def key(self) -> str:
        return self.action.key

    @property
    def description(self) -> str:
        return self.action.description

    @property
    def is_streaming(self) -> bool:
        return self.action.stream_schema is not None

    def __repr__(self) -> str:
        return f"Flow({self.name})"

    async def run(
        self,
        input: Any = None,
        *,
        context: Optional[ActionContext] = None,
        on_chunk: Optional[ChunkSink] = None,
        signal: Optional[CancellationSignal] = None,
        timeout: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
        telemetry: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        执行并等待最终结果

        Raises:
            ValidationError: 输入或输出不符合契约
        """
        return await self.action.run(
            input,
            context=context,
            on_chunk=on_chunk,
            signal=signal,
            timeout=timeout,
            metadata=metadata,
            telemetry=telemetry,
        )

    def stream(
        self,
        input: Any = None,
        *,
        context: Optional[ActionContext] = None,
        signal: Optional[CancellationSignal] = None,
        timeout: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
        telemetry: Optional[dict[str, Any]] = None,
    ) -> StreamingResult:
        """
        流式执行

        处理函数通过 ctx.send_chunk 推送的增量按顺序出现在 stream 中；
        处理函数失败时 stream 正常结束，output 抛出同一个异常。
        """
        return self.action.stream(
            input,
            context=context,
            signal=signal,
            timeout=timeout,
            metadata=metadata,
            telemetry=telemetry,
        )

    async def __call__(self, input: Any = None, **kwargs: Any) -> Any:
        return await self.run(input, **kwargs)


def flow_action(
    name: str,
    fn: Callable[..., Any],
    *,
    description: str = "",
    input_schema: Any = Any,
    output_schema: Any = Any,
    stream_schema: Any = None,
    middleware: Optional[Sequence[Middleware]] = None,
) -> Action:
    """创建 flow 类型的 Action（第一个 middleware 负责日志和 FlowState 记录）"""
    action = Action(
        ActionKind.FLOW,
        name,
        fn,
        description=description or _first_line(fn.__doc__),
        input_schema=input_schema,
        output_schema=output_schema,
        stream_schema=stream_schema,
        middleware=middleware,
    )
    action.middleware = (_flow_middleware(name, action.validate_output), *action.middleware)
    return action


def define_flow(
    registry: 'Registry',
    name: str,
    fn: Callable[..., Any],
    *,
    description: str = "",
    input_schema: Any = Any,
    output_schema: Any = Any,
    stream_schema: Any = None,
    middleware: Optional[Sequence[Middleware]] = None,
) -> Flow:
    """
    创建并注册一个 Flow

    Args:
        registry: 注册表
        name: Flow 名称（HTTP 路径和 Action 键都使用这个名称）
        fn: 处理函数 fn(input) 或 fn(input, ctx)
        input_schema / output_schema / stream_schema: 契约类型
        middleware: 拦截器（按顺序包裹处理函数）

    Raises:
        DuplicateNameError: 同名 Flow 已注册
    """
    action = flow_action(
        name,
        fn,
        description=description,
        input_schema=input_schema,
        output_schema=output_schema,
        stream_schema=stream_schema,
        middleware=middleware,
    )
    registry.register_action(action)
    return Flow(action)


def define_streaming_flow(
    registry: 'Registry',
    name: str,
    fn: Callable[..., Any],
    *,
    stream_schema: Any = Any,
    **kwargs: Any,
) -> Flow:
    """创建并注册一个声明了增量契约的 Flow"""
    return define_flow(registry, name, fn, stream_schema=stream_schema, **kwargs)


# ==================== 内部方法 ====================

def _flow_middleware(name: str, validate_output: Callable[[Any], Any]) -> Middleware:
    """记录 Flow 调用日志，并写入 FlowState（输出通过契约校验后才记为 done）"""

    async def middleware(input: Any, ctx: ActionContext, next: NextFn) -> Any:
        store = ctx.registry.flow_state_store
        state = FlowState(
            name=name,
            input=to_jsonable_python(input, fallback=repr),
            trace_ids=[ctx.trace_id] if ctx.trace_id else [],
        )
        logger.info(
            f"[Flow {name}] START flow_id={state.flow_id} trace_id={ctx.trace_id} "
            f"stream={ctx.is_streaming}"
        )
        await _save_state(store, state)
        try:
            output = validate_output(await next(input, ctx))
        except Exception as e:
            state.status = 'error'
            state.error = error_body(e)['error']
            state.end_time = time.time()
            logger.error(
                f"[Flow {name}] FAILED flow_id={state.flow_id} "
                f"error={str(e)} duration={ctx.elapsed_time:.2f}s"
            )
            await _save_state(store, state)
            raise
        state.status = 'done'
        state.output = to_jsonable_python(output, fallback=repr)
        state.end_time = time.time()
        logger.info(f"[Flow {name}] SUCCESS flow_id={state.flow_id} duration={ctx.elapsed_time:.2f}s")
        await _save_state(store, state)
        return output

    return middleware


async def _save_state(store: Any, state: FlowState) -> None:
    if store is None:
        return
    try:
        await store.save(state.flow_id, state)
    except Exception:
        logger.warning(f"[Flow {state.name}] failed to save flow state {state.flow_id}", exc_info=True)


def _first_line(doc: Optional[str]) -> str:
    return doc.strip().splitlines()[0] if doc and doc.strip() else ""
