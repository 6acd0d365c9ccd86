"""工具系统 - 模型可以请求调用的函数"""

from __future__ import annotations

import asyncio
import inspect
import re
import typing
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from pydantic import BaseModel, Field, create_model

from .action import Action, ActionKind, Middleware
from .context import ActionContext
from .models.llm_request import ToolDefinition

if TYPE_CHECKING:
    from .registry import Registry


_CONTEXT_PARAM_NAMES = ('ctx', 'context')


def tool_action(
    fn: Callable[..., Any],
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    input_schema: Any = None,
    output_schema: Any = Any,
    middleware: Optional[Sequence[Middleware]] = None,
) -> Action:
    """
    把普通 Python 函数包装为 tool 类型的 Action（不注册）

    两种调用方式:
    - 不传 input_schema: 从函数签名和 docstring 生成输入模型，
      调用时按字段展开 fn(**fields)
    - 传入 input_schema: 校验后的输入整体传给 fn(input[, ctx])

    函数参数中名为 ctx / context（或标注为 ActionContext）的参数接收执行上下文。
    """
    tool_name = name or fn.__name__
    tool_desc = description or _first_paragraph(inspect.getdoc(fn)) or f"Function {tool_name}"

    if input_schema is not None:
        return Action(
            ActionKind.TOOL,
            tool_name,
            fn,
            description=tool_desc,
            input_schema=input_schema,
            output_schema=output_schema,
            middleware=middleware,
        )

    model, context_param = _extract_input_model(fn, tool_name)
    field_names = list(model.model_fields)

    async def handler(input: BaseModel, ctx: ActionContext) -> Any:
        kwargs = {field: getattr(input, field) for field in field_names}
        if context_param is not None:
            kwargs[context_param] = ctx
        if inspect.iscoroutinefunction(fn):
            return await fn(**kwargs)
        return await asyncio.to_thread(fn, **kwargs)

    return Action(
        ActionKind.TOOL,
        tool_name,
        handler,
        description=tool_desc,
        input_schema=model,
        output_schema=output_schema,
        middleware=middleware,
    )


def define_tool(
    registry: 'Registry',
    fn: Callable[..., Any],
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    input_schema: Any = None,
    output_schema: Any = Any,
    middleware: Optional[Sequence[Middleware]] = None,
) -> Action:
    """
    创建并注册一个工具

    注意: 普通（非 async）函数通过 asyncio.to_thread 在线程中执行。
    调用被取消时生成循环会立即返回 CancellationError，
    但线程无法被中断，函数本身会一直运行到结束（结果被丢弃）。
    需要可取消的工具请定义为 async 函数。
    """
    action = tool_action(
        fn,
        name=name,
        description=description,
        input_schema=input_schema,
        output_schema=output_schema,
        middleware=middleware,
    )
    return registry.register_action(action)


def tool(name: Optional[str] = None, description: Optional[str] = None, **kwargs: Any):
    """
    装饰器 - 将普通函数转换为工具 Action（不注册，可放进 Plugin.tools）

    用法:
      @tool(description="搜索网页")
      def search(query: str) -> str:
        return f"搜索结果: {query}"
    """
    def decorator(fn: Callable[..., Any]) -> Action:
        return tool_action(fn, name=name, description=description, **kwargs)

    return decorator


def to_definition(action: Action) -> ToolDefinition:
    """
    转换为工具描述（供模型理解）
    这是与模型交互的关键 - 让模型知道有哪些工具可用
    """
    desc = action.describe()
    return ToolDefinition(
        name=action.name,
        description=action.description,
        input_schema=desc['inputSchema'],
        output_schema=desc['outputSchema'],
    )


# ==================== 签名解析 ====================

def _extract_input_model(fn: Callable[..., Any], tool_name: str) -> tuple[type[BaseModel], Optional[str]]:
    """从函数签名和 docstring 生成输入模型"""
    sig = inspect.signature(fn)
    try:
        hints = typing.get_type_hints(fn)
    except (NameError, TypeError):
        hints = {}
    descriptions = _parse_docstring_params(inspect.getdoc(fn) or '')

    fields: dict[str, Any] = {}
    context_param = None
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = hints.get(param_name, Any)
        if annotation is ActionContext or param_name in _CONTEXT_PARAM_NAMES:
            context_param = param_name
            continue
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param_name] = (annotation, Field(default, description=descriptions.get(param_name)))

    model = create_model(_model_name(tool_name), **fields)
    return model, context_param


def _parse_docstring_params(docstring: str) -> dict[str, str]:
    """
    解析 docstring 中的参数描述

    支持 Google 风格:
      Args:
        city: 城市名称
        date: 查询日期

    和简单风格:
      :param city: 城市名称
    """
    descriptions = {}

    if not docstring:
        return descriptions

    args_match = re.search(r'Args?:\s*\n((?:\s+\w+.*\n?)+)', docstring, re.IGNORECASE)
    if args_match:
        args_section = args_match.group(1)
        # "param_name: description" 或 "param_name (type): description"
        for match in re.finditer(r'^\s+(\w+)(?:\s*\([^)]*\))?:\s*(.+?)(?=\n\s+\w+|\n\n|\Z)',
                                 args_section, re.MULTILINE | re.DOTALL):
            descriptions[match.group(1)] = match.group(2).strip().replace('\n', ' ')

    for match in re.finditer(r':param\s+(\w+):\s*(.+?)(?=:|$)', docstring, re.MULTILINE):
        descriptions[match.group(1)] = match.group(2).strip()

    return descriptions


def _first_paragraph(docstring: Optional[str]) -> str:
    if not docstring:
        return ''
    return docstring.split('\n\n', 1)[0].strip()


def _model_name(tool_name: str) -> str:
    words = re.split(r'[^0-9a-zA-Z]+', tool_name)
    return ''.join(word[:1].upper() + word[1:] for word in words if word) + 'Input'
