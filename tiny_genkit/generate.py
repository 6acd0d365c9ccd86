"""生成循环 - 模型调用与工具调用交替进行，直到模型给出最终回复"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

from .action import Action, ActionKind
from .context import ActionContext, CancellationSignal, ChunkSink
from .errors import (
    ActionNotFoundError,
    CancellationError,
    ToolLoopExceededError,
    ToolNotFoundError,
    UnsupportedCapabilityError,
)
from .models.base_llm import get_model_info
from .models.llm_request import (
    GenerateRequest,
    Message,
    OutputConfig,
    Part,
    Role,
    ToolRequest,
    ToolResponse,
)
from .models.llm_response import FinishReason, GenerateResponse
from .streaming import StreamingResult, run_streaming
from .tools import to_definition
from .tracing import run_in_span, to_json_attr

if TYPE_CHECKING:
    from .registry import Registry

logger = logging.getLogger(__name__)

# 默认最多允许的工具往返次数
DEFAULT_MAX_TURNS = 5

ModelRef = Union[str, Action]
ToolRef = Union[str, Action]


async def generate(
    registry: 'Registry',
    *,
    model: ModelRef,
    prompt: Optional[str] = None,
    system: Optional[str] = None,
    messages: Optional[Sequence[Message]] = None,
    tools: Optional[Sequence[ToolRef]] = None,
    config: Optional[dict[str, Any]] = None,
    output: Optional[OutputConfig] = None,
    return_tool_requests: bool = False,
    max_turns: int = DEFAULT_MAX_TURNS,
    on_chunk: Optional[ChunkSink] = None,
    context: Optional[ActionContext] = None,
    signal: Optional[CancellationSignal] = None,
    timeout: Optional[float] = None,
) -> GenerateResponse:
    """
    执行生成循环

    每一轮:
    1. 调用模型
    2. 检查第一个候选：结束原因不是 tool-call、没有工具调用、或者手动模式，直接返回
    3. 并行执行所有工具调用（单个工具的校验失败或异常作为失败的 ToolResponse 返回）
    4. 把候选消息和一条包含所有 ToolResponse 的 tool 消息追加到历史
    5. 工具往返次数用完后模型仍然请求工具时抛 ToolLoopExceededError

    Args:
        registry: 解析模型和工具的注册表
        model: 模型名称（"openai/gpt-4o-mini"）或模型 Action
        prompt: 简写，追加一条用户消息
        system: 简写，在最前面插入一条系统消息
        messages: 消息历史
        tools: 本次可用的工具（名称或工具 Action）
        config: 模型参数
        output: 输出格式提示
        return_tool_requests: 手动模式，工具调用交给调用方处理
        max_turns: 最多允许的工具往返次数
        on_chunk: 模型增量回调（所有轮次的增量按顺序推送）
        context: 调用方的上下文（在 Flow 中调用时传入 ctx）
        signal: 取消信号
        timeout: 整个循环的超时秒数

    Raises:
        ActionNotFoundError: 模型不存在
        ToolNotFoundError: 工具不存在，或模型请求了不在本次工具集中的工具
        UnsupportedCapabilityError: 传入了工具但模型不支持工具调用
        ToolLoopExceededError: 超过工具往返上限
        CancellationError: 被取消或超时（已完成的部分历史被丢弃）
    """
    model_action = await _resolve_model(registry, model)
    tool_set = {action.name: action for action in [await _resolve_tool(registry, t) for t in tools or ()]}

    info = get_model_info(model_action)
    if tool_set and not info.supports.tools:
        raise UnsupportedCapabilityError(
            f"Model '{model_action.name}' does not support tool calling",
            details={'model': model_action.name, 'tools': list(tool_set)},
        )

    history = _build_messages(system, messages, prompt)
    base_request = GenerateRequest(
        tools=[to_definition(action) for action in tool_set.values()],
        config=dict(config or {}),
        output=output,
    )

    base_signal = signal or (context.signal if context is not None else CancellationSignal())
    ctx = ActionContext(
        registry=registry,
        signal=base_signal.child(timeout),
        trace=context.trace if context is not None else None,
        span_id=context.span_id if context is not None else None,
        metadata=dict(context.metadata) if context is not None else {},
    )
    attributes = {
        'genkit:type': ActionKind.UTIL.value,
        'genkit:name': 'generate',
        'genkit:input': to_json_attr({'model': model_action.name, 'tools': list(tool_set)}),
    }

    logger.info(
        f"[Generate] START model={model_action.name} tools={list(tool_set)} "
        f"max_turns={max_turns} invocation_id={ctx.invocation_id}"
    )
    try:
        async with run_in_span(ctx, 'generate', attributes) as span:
            response, turns = await _loop(
                ctx, model_action, tool_set, history, base_request,
                return_tool_requests, max_turns, on_chunk,
            )
            span.attributes['genkit:output'] = to_json_attr(response)
    except Exception as e:
        logger.error(
            f"[Generate] FAILED invocation_id={ctx.invocation_id} "
            f"error={type(e).__name__}: {e} duration={ctx.elapsed_time:.2f}s"
        )
        raise
    finally:
        ctx.signal.release()

    logger.info(
        f"[Generate] SUCCESS invocation_id={ctx.invocation_id} turns={turns} "
        f"finish_reason={response.finish_reason} duration={ctx.elapsed_time:.2f}s"
    )
    return response


def generate_stream(registry: 'Registry', **kwargs: Any) -> StreamingResult[GenerateResponse]:
    """
    流式执行生成循环

    Returns:
        StreamingResult: stream 为所有轮次的 GenerateResponseChunk，output 为最终响应
    """
    kwargs.pop('on_chunk', None)
    return run_streaming(lambda send: generate(registry, on_chunk=send, **kwargs))


# ==================== 循环 ====================

async def _loop(
    ctx: ActionContext,
    model_action: Action,
    tool_set: dict[str, Action],
    history: list[Message],
    base_request: GenerateRequest,
    return_tool_requests: bool,
    max_turns: int,
    on_chunk: Optional[ChunkSink],
) -> tuple[GenerateResponse, int]:
    turns = 0
    while True:
        ctx.signal.raise_if_cancelled()

        request = base_request.model_copy(update={'messages': list(history)})
        logger.debug(f"[Generate] turn {turns + 1} messages={len(history)}")
        response: GenerateResponse = await model_action.run(request, context=ctx, on_chunk=on_chunk)
        response.request = request

        candidate = response.candidate
        if candidate is None:
            return response, turns
        tool_requests = candidate.message.tool_requests
        if candidate.finish_reason != FinishReason.TOOL_CALL or not tool_requests or return_tool_requests:
            return response, turns

        if turns >= max_turns:
            raise ToolLoopExceededError(
                f"Exceeded maximum tool call iterations ({max_turns})",
                details={'max_turns': max_turns},
            )
        turns += 1

        # 先解析所有工具，任何一个不存在都直接中止
        calls = [(req, _lookup_tool(tool_set, req.name)) for req in tool_requests]
        tool_responses = await ctx.signal.guard(_run_tools(ctx, calls))

        history.append(candidate.message)
        history.append(Message(
            role=Role.TOOL,
            content=[Part(tool_response=resp) for resp in tool_responses],
        ))


async def _run_tools(ctx: ActionContext, calls: list[tuple[ToolRequest, Action]]) -> list[ToolResponse]:
    """并行执行工具调用，结果按请求顺序返回"""
    return list(await asyncio.gather(*(_run_tool(ctx, req, action) for req, action in calls)))


async def _run_tool(ctx: ActionContext, req: ToolRequest, action: Action) -> ToolResponse:
    logger.debug(f"[Generate] tool call {req.name} ref={req.ref}")
    try:
        output = action.dump_output(await action.run(req.input, context=ctx))
    except CancellationError:
        raise
    except Exception as e:
        logger.warning(f"[Generate] tool {req.name} failed: {type(e).__name__}: {e}")
        return ToolResponse(name=req.name, ref=req.ref, error=str(e) or type(e).__name__)
    return ToolResponse(name=req.name, ref=req.ref, output=output)


# ==================== 辅助函数 ====================

def _build_messages(
    system: Optional[str],
    messages: Optional[Sequence[Message]],
    prompt: Optional[str],
) -> list[Message]:
    history: list[Message] = []
    if system is not None:
        history.append(Message(role=Role.SYSTEM, content=[Part(text=system)]))
    history.extend(messages or ())
    if prompt is not None:
        history.append(Message(role=Role.USER, content=[Part(text=prompt)]))
    return history


async def _resolve_model(registry: 'Registry', model: ModelRef) -> Action:
    if isinstance(model, Action):
        return model
    action = await registry.resolve_action(ActionKind.MODEL, model)
    if action is None:
        raise ActionNotFoundError(f"Model '{model}' not found", details={'model': model})
    return action


async def _resolve_tool(registry: 'Registry', tool: ToolRef) -> Action:
    if isinstance(tool, Action):
        return tool
    action = await registry.resolve_action(ActionKind.TOOL, tool)
    if action is None:
        raise ToolNotFoundError(f"Tool '{tool}' not found", details={'tool': tool})
    return action


def _lookup_tool(tool_set: dict[str, Action], name: str) -> Action:
    action = tool_set.get(name)
    if action is None:
        raise ToolNotFoundError(
            f"Model requested tool '{name}' which is not available",
            details={'tool': name, 'available': list(tool_set)},
        )
    return action
