"""Prompt - 把输入渲染为生成请求的 Action"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from .action import Action, ActionKind, _accepts_context, _is_async_callable
from .context import ActionContext, ChunkSink
from .config import get_config
from .generate import ModelRef, ToolRef, generate
from .models.llm_request import GenerateRequest, Message, Part, Role
from .models.llm_response import GenerateResponse
from .streaming import StreamingResult, run_streaming

if TYPE_CHECKING:
    from .registry import Registry


PromptFn = Callable[..., Any]


class Prompt:
    """
    Prompt - prompt 类型 Action 的包装

    渲染函数返回以下任意一种:
    - str: 作为一条用户消息
    - list[Message]: 消息历史
    - GenerateRequest（或等价的 dict）

    示例:
        menu = define_prompt(registry, "menu", lambda i: f"推荐一道{i['style']}菜",
                             model="openai/gpt-4o-mini")
        response = await menu.generate({"style": "川"})
    """

    def __init__(
        self,
        action: Action,
        *,
        model: Optional[ModelRef] = None,
        tools: Optional[Sequence[ToolRef]] = None,
        max_turns: Optional[int] = None,
    ):
        self.action = action
        self.model = model
        self.tools = list(tools or ())
        self.max_turns = max_turns

    @property
    def name(self) -> str:
        return self.action.name

    async def render(self, input: Any = None, *, context: Optional[ActionContext] = None) -> GenerateRequest:
        """渲染生成请求（不调用模型）"""
        return await self.action.run(input, context=context)

    async def generate(
        self,
        input: Any = None,
        *,
        model: Optional[ModelRef] = None,
        context: Optional[ActionContext] = None,
        on_chunk: Optional[ChunkSink] = None,
        max_turns: Optional[int] = None,
        **kwargs: Any,
    ) -> GenerateResponse:
        """
        渲染后执行生成循环

        工具集为定义时的 tools 加上渲染结果中声明的工具；
        max_turns 依次取参数、定义时的值、全局配置 runtime.max_turns。
        """
        request = await self.render(input, context=context)
        if max_turns is None:
            max_turns = self.max_turns if self.max_turns is not None else get_config().runtime.max_turns
        return await generate(
            self._registry(context),
            model=self._model(model),
            messages=request.messages,
            tools=self._tools(request),
            config=request.config,
            output=request.output,
            context=context,
            on_chunk=on_chunk,
            max_turns=max_turns,
            **kwargs,
        )

    def generate_stream(self, input: Any = None, **kwargs: Any) -> StreamingResult[GenerateResponse]:
        """流式执行：stream 为所有轮次的模型增量，output 为最终响应"""
        kwargs.pop('on_chunk', None)
        return run_streaming(lambda send: self.generate(input, on_chunk=send, **kwargs))

    def _registry(self, context: Optional[ActionContext]) -> 'Registry':
        if context is not None:
            return context.registry
        if self.action.registry is None:
            raise RuntimeError(f"Prompt '{self.name}' is not registered")
        return self.action.registry

    def _tools(self, request: GenerateRequest) -> list[ToolRef]:
        names = {t if isinstance(t, str) else t.name for t in self.tools}
        return [*self.tools, *(t.name for t in request.tools if t.name not in names)]

    def _model(self, model: Optional[ModelRef]) -> ModelRef:
        model = model or self.model
        if model is None:
            raise ValueError(f"Prompt '{self.name}' has no model; pass model= or set a default model")
        return model


def prompt_action(
    name: str,
    fn: PromptFn,
    *,
    description: str = "",
    input_schema: Any = Any,
    model: Optional[ModelRef] = None,
    tools: Optional[Sequence[ToolRef]] = None,
    config: Optional[dict[str, Any]] = None,
) -> Action:
    """创建 prompt 类型的 Action（输出为 GenerateRequest）"""
    accepts_context = _accepts_context(fn)
    is_async = _is_async_callable(fn)
    defaults = dict(config or {})

    async def handler(input: Any, ctx: ActionContext) -> GenerateRequest:
        args = (input, ctx) if accepts_context else (input,)
        rendered = await fn(*args) if is_async else fn(*args)
        request = _to_request(rendered)
        if defaults:
            request.config = {**defaults, **request.config}
        return request

    return Action(
        ActionKind.PROMPT,
        name,
        handler,
        description=description,
        input_schema=input_schema,
        output_schema=GenerateRequest,
        metadata={
            'prompt': {
                'model': model if isinstance(model, str) or model is None else model.name,
                'tools': [t if isinstance(t, str) else t.name for t in tools or ()],
                'config': defaults,
            },
        },
    )


def define_prompt(
    registry: 'Registry',
    name: str,
    fn: PromptFn,
    *,
    description: str = "",
    input_schema: Any = Any,
    model: Optional[ModelRef] = None,
    tools: Optional[Sequence[ToolRef]] = None,
    config: Optional[dict[str, Any]] = None,
    max_turns: Optional[int] = None,
) -> Prompt:
    """创建并注册一个 Prompt"""
    action = prompt_action(
        name, fn,
        description=description,
        input_schema=input_schema,
        model=model,
        tools=tools,
        config=config,
    )
    registry.register_action(action)
    return Prompt(action, model=model, tools=tools, max_turns=max_turns)


def _to_request(rendered: Any) -> GenerateRequest:
    if isinstance(rendered, GenerateRequest):
        return rendered
    if isinstance(rendered, str):
        return GenerateRequest(messages=[Message(role=Role.USER, content=[Part(text=rendered)])])
    if isinstance(rendered, list):
        return GenerateRequest(messages=rendered)
    return GenerateRequest.model_validate(rendered)

