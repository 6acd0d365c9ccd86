"""
Model 层 - 生成请求/响应类型和模型 Action

这一层负责统一不同模型提供商的接口，提供：
- GenerateRequest / GenerateResponse: 标准化的请求/响应格式
- GenerateResponseChunk: 流式增量
- ModelInfo: 模型能力声明
- define_model / model_action: 把一个函数声明为 model Action
- openai_compatible: OpenAI 兼容的模型 Plugin

设计理念:
- 调用方（生成循环）不需要关心具体是哪个模型
- 新增模型提供商只需提供一个 fn(request, ctx) -> GenerateResponse
- 使用 Pydantic 进行契约校验
"""

from .base_llm import ModelInfo, ModelSupports, define_model, get_model_info, model_action
from .llm_request import (
    GenerateRequest,
    Media,
    Message,
    OutputConfig,
    Part,
    Role,
    ToolDefinition,
    ToolRequest,
    ToolResponse,
)
from .llm_response import (
    Candidate,
    FinishReason,
    GenerateResponse,
    GenerateResponseChunk,
    GenerationUsage,
)
from .openai_llm import OpenAIModel, openai_compatible

__all__ = [
    'Candidate',
    'FinishReason',
    'GenerateRequest',
    'GenerateResponse',
    'GenerateResponseChunk',
    'GenerationUsage',
    'Media',
    'Message',
    'ModelInfo',
    'ModelSupports',
    'OpenAIModel',
    'OutputConfig',
    'Part',
    'Role',
    'ToolDefinition',
    'ToolRequest',
    'ToolResponse',
    'define_model',
    'get_model_info',
    'model_action',
    'openai_compatible',
]
