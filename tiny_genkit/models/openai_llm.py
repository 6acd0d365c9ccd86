"""OpenAI 兼容的模型 Plugin"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from openai import AsyncOpenAI

from ..context import ActionContext
from ..plugin import Plugin, PluginProvider
from .base_llm import ModelInfo, ModelSupports, model_action
from .llm_request import GenerateRequest, Message, Part, Role, ToolRequest
from .llm_response import (
    Candidate,
    FinishReason,
    GenerateResponse,
    GenerateResponseChunk,
    GenerationUsage,
)

logger = logging.getLogger(__name__)


_FINISH_REASONS = {
    'stop': FinishReason.STOP,
    'tool_calls': FinishReason.TOOL_CALL,
    'function_call': FinishReason.TOOL_CALL,
    'length': FinishReason.LENGTH,
    'content_filter': FinishReason.BLOCKED,
}

_ROLES = {
    Role.USER: 'user',
    Role.MODEL: 'assistant',
    Role.SYSTEM: 'system',
}

# GenerateRequest.config 中的通用参数名 -> chat.completions 参数名
_CONFIG_KEYS = {
    'temperature': 'temperature',
    'max_tokens': 'max_tokens',
    'maxOutputTokens': 'max_tokens',
    'top_p': 'top_p',
    'topP': 'top_p',
    'stop': 'stop',
    'stopSequences': 'stop',
    'seed': 'seed',
}


def openai_compatible(
    name: str = "openai",
    models: Sequence[str] = ("gpt-4o-mini",),
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    client: Any = None,
) -> PluginProvider:
    """
    创建 OpenAI 兼容的模型 Plugin

    Plugin 初始化时创建一个 AsyncOpenAI 客户端（每个 Registry 一个），
    为每个模型提供名为 "{name}/{model}" 的 model Action。

    Args:
        name: Plugin 名称（也是模型名的命名空间）
        models: 模型列表
        api_key: API Key（None 时由 openai 库读取 OPENAI_API_KEY）
        base_url: API 地址（兼容 OpenAI 协议的其他服务，例如 vLLM、Ollama）
        client: 预先创建的客户端（主要用于测试）
    """
    async def initialize() -> Plugin:
        api = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        actions = [
            model_action(
                f"{name}/{model}",
                OpenAIModel(api, model).generate,
                info=ModelInfo(
                    label=f"{name} - {model}",
                    supports=ModelSupports(tools=True, media=True, output=['text', 'json']),
                ),
            )
            for model in models
        ]
        shutdown = getattr(api, 'close', None) if client is None else None
        return Plugin(models=actions, resources={'client': api}, shutdown=shutdown)

    return PluginProvider(name=name, initializer=initialize)


class OpenAIModel:
    """
    GenerateRequest 与 chat.completions 之间的转换

    - 非流式: 一次请求，解析完整响应
    - 流式: 文本增量通过 ctx.send_chunk 推送，工具调用增量在本地拼接，
      结束后返回完整响应
    """

    def __init__(self, client: Any, model: str):
        self.client = client
        self.model = model

    async def generate(self, request: GenerateRequest, ctx: ActionContext) -> GenerateResponse:
        params = self._build_params(request)
        self._log_request(params)

        if ctx.is_streaming:
            params['stream'] = True
            params['stream_options'] = {'include_usage': True}
            stream = await self.client.chat.completions.create(**params)
            response = await self._process_stream(stream, ctx)
        else:
            completion = await self.client.chat.completions.create(**params)
            response = self._parse_response(completion)

        self._log_response(response)
        return response

    # ==================== 请求转换 ====================

    def _build_params(self, request: GenerateRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            'model': self.model,
            'messages': _to_openai_messages(request.messages),
        }
        if request.tools:
            params['tools'] = [
                {
                    'type': 'function',
                    'function': {
                        'name': tool.name,
                        'description': tool.description,
                        'parameters': tool.input_schema or {'type': 'object', 'properties': {}},
                    },
                }
                for tool in request.tools
            ]
            params['tool_choice'] = 'auto'
        for key, value in request.config.items():
            if key in _CONFIG_KEYS:
                params[_CONFIG_KEYS[key]] = value
        if request.output is not None and request.output.format == 'json':
            params['response_format'] = {'type': 'json_object'}
        return params

    # ==================== 响应解析 ====================

    def _parse_response(self, completion: Any) -> GenerateResponse:
        """解析非流式响应"""
        choice = completion.choices[0]
        message = choice.message

        content: list[Part] = []
        if message.content:
            content.append(Part(text=message.content))
        for tc in message.tool_calls or []:
            content.append(Part(tool_request=ToolRequest(
                name=tc.function.name,
                ref=tc.id,
                input=_parse_arguments(tc.function.name, tc.function.arguments),
            )))

        return GenerateResponse(
            candidates=[Candidate(
                index=0,
                message=Message(role=Role.MODEL, content=content),
                finish_reason=_finish_reason(choice.finish_reason),
            )],
            usage=_usage(completion.usage),
            custom={'model': completion.model},
        )

    async def _process_stream(self, stream: Any, ctx: ActionContext) -> GenerateResponse:
        """处理流式响应"""
        full_content = ""
        tool_calls_data: list[dict[str, Any]] = []
        finish_reason = None
        model_name = None
        usage = None

        async for chunk in stream:
            if getattr(chunk, 'usage', None):
                usage = chunk.usage
            if chunk.model:
                model_name = chunk.model
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta

            if delta.content:
                full_content += delta.content
                ctx.send_chunk(GenerateResponseChunk(index=0, content=[Part(text=delta.content)]))

            # 工具调用按 index 分片到达，参数是逐段拼接的 JSON 字符串
            for tc in delta.tool_calls or []:
                tc_name = tc.function.name if tc.function else None
                tc_args = tc.function.arguments if tc.function else ""
                if tc.index < len(tool_calls_data):
                    existing = tool_calls_data[tc.index]
                    if tc_args:
                        existing['arguments'] += tc_args
                    if tc.id:
                        existing['id'] = tc.id
                    if tc_name:
                        existing['name'] = tc_name
                else:
                    tool_calls_data.append({
                        'id': tc.id,
                        'name': tc_name,
                        'arguments': tc_args or "",
                    })

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        content: list[Part] = []
        if full_content:
            content.append(Part(text=full_content))
        for i, tc in enumerate(tool_calls_data):
            if not tc.get('name'):
                continue
            content.append(Part(tool_request=ToolRequest(
                name=tc['name'],
                ref=tc.get('id') or f"call_{i}",
                input=_parse_arguments(tc['name'], tc['arguments']),
            )))

        return GenerateResponse(
            candidates=[Candidate(
                index=0,
                message=Message(role=Role.MODEL, content=content),
                finish_reason=_finish_reason(finish_reason),
            )],
            usage=_usage(usage),
            custom={'model': model_name or self.model},
        )

    # ==================== 日志 ====================

    def _log_request(self, params: dict[str, Any]) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        tool_names = [t['function']['name'] for t in params.get('tools', [])]
        logger.debug(
            f"[OpenAIModel] INPUT model={params['model']} stream={params.get('stream', False)} "
            f"messages={len(params['messages'])} tools={tool_names}"
        )

    def _log_response(self, response: GenerateResponse) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        preview = response.text.replace('\n', ' ')[:50]
        tool_names = [req.name for req in response.tool_requests]
        logger.debug(
            f"[OpenAIModel] OUTPUT finish={response.finish_reason} tools={tool_names} content=\"{preview}\""
        )


# ==================== 辅助函数 ====================

def _to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for message in messages:
        if message.role == Role.TOOL:
            # 每个工具结果是一条单独的 tool 消息
            for resp in message.tool_responses:
                payload = {'error': resp.error} if resp.error is not None else resp.output
                result.append({
                    'role': 'tool',
                    'tool_call_id': resp.ref or resp.name,
                    'content': json.dumps(payload, ensure_ascii=False, default=str),
                })
            continue

        msg: dict[str, Any] = {'role': _ROLES[message.role], 'content': _to_openai_content(message)}
        if message.role == Role.MODEL and message.tool_requests:
            msg['tool_calls'] = [
                {
                    'id': req.ref or req.name,
                    'type': 'function',
                    'function': {
                        'name': req.name,
                        'arguments': json.dumps(req.input if req.input is not None else {}, ensure_ascii=False),
                    },
                }
                for req in message.tool_requests
            ]
        result.append(msg)
    return result


def _to_openai_content(message: Message) -> Any:
    media = [part.media for part in message.content if part.media is not None]
    if not media or message.role != Role.USER:
        return message.text or None
    content: list[dict[str, Any]] = []
    if message.text:
        content.append({'type': 'text', 'text': message.text})
    for item in media:
        content.append({'type': 'image_url', 'image_url': {'url': item.url}})
    return content


def _parse_arguments(name: str, arguments: Optional[str]) -> Any:
    try:
        return json.loads(arguments or "{}")
    except json.JSONDecodeError:
        logger.warning(f"[OpenAIModel] invalid JSON arguments for tool {name}: {arguments!r}")
        return {}


def _finish_reason(reason: Optional[str]) -> FinishReason:
    if reason is None:
        return FinishReason.UNKNOWN
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


def _usage(usage: Any) -> Optional[GenerationUsage]:
    if not usage:
        return None
    return GenerationUsage(
        input_tokens=usage.prompt_tokens,
        output_tokens=usage.completion_tokens,
        total_tokens=usage.total_tokens,
    )
