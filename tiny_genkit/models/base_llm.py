"""模型 Action 定义"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from pydantic import Field

from ..action import Action, ActionKind, Middleware
from .llm_request import GenerateRequest, GenkitModel
from .llm_response import GenerateResponse, GenerateResponseChunk

if TYPE_CHECKING:
    from ..registry import Registry


class ModelSupports(GenkitModel):
    """模型能力声明"""

    multiturn: bool = True
    tools: bool = False
    media: bool = False
    system_role: bool = True
    output: list[str] = Field(default_factory=lambda: ['text'])


class ModelInfo(GenkitModel):
    """模型信息（作为 Action metadata 发布，生成循环据此检查能力）"""

    label: str = ""
    supports: ModelSupports = Field(default_factory=ModelSupports)


ModelFn = Callable[..., Any]


def model_action(
    name: str,
    fn: ModelFn,
    *,
    info: Optional[ModelInfo] = None,
    description: str = "",
    middleware: Optional[Sequence[Middleware]] = None,
) -> Action:
    """
    创建一个 model 类型的 Action（不注册，供 Plugin 使用）

    处理函数签名: fn(request: GenerateRequest[, ctx]) -> GenerateResponse，
    流式调用时通过 ctx.send_chunk(GenerateResponseChunk) 推送增量。
    """
    info = info or ModelInfo(label=name)
    return Action(
        ActionKind.MODEL,
        name,
        fn,
        description=description or info.label,
        input_schema=GenerateRequest,
        output_schema=GenerateResponse,
        stream_schema=GenerateResponseChunk,
        metadata={'model': info.model_dump(mode='json', by_alias=True)},
        middleware=middleware,
    )


def define_model(
    registry: 'Registry',
    name: str,
    fn: ModelFn,
    *,
    info: Optional[ModelInfo] = None,
    description: str = "",
    middleware: Optional[Sequence[Middleware]] = None,
) -> Action:
    """创建并注册一个模型"""
    action = model_action(name, fn, info=info, description=description, middleware=middleware)
    return registry.register_action(action)


def get_model_info(action: Action) -> ModelInfo:
    """读取模型 Action 发布的 ModelInfo"""
    return ModelInfo.model_validate(action.metadata.get('model') or {})
