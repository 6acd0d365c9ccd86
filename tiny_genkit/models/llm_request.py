"""生成请求的标准化格式"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class GenkitModel(BaseModel):
    """请求/响应类型的公共配置：JSON 中使用 camelCase，Python 中使用 snake_case"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    """消息角色"""
    USER = 'user'
    MODEL = 'model'
    SYSTEM = 'system'
    TOOL = 'tool'


class Media(GenkitModel):
    url: str
    content_type: Optional[str] = None


class ToolRequest(GenkitModel):
    """
    模型发起的工具调用

    Attributes:
        name: 工具名称
        ref: 调用标识（对应的 ToolResponse 使用相同的 ref）
        input: 调用参数
    """
    name: str
    ref: Optional[str] = None
    input: Any = None


class ToolResponse(GenkitModel):
    """
    工具调用结果

    error 不为空表示这次调用失败（校验失败或工具本身抛出异常），
    失败同样作为结果返回给模型，而不是中断生成。
    """
    name: str
    ref: Optional[str] = None
    output: Any = None
    error: Optional[str] = None


class Part(GenkitModel):
    """消息内容片段：text / media / data / tool_request / tool_response 中恰好一个"""

    text: Optional[str] = None
    media: Optional[Media] = None
    data: Any = None
    tool_request: Optional[ToolRequest] = None
    tool_response: Optional[ToolResponse] = None
    metadata: Optional[dict[str, Any]] = None

    @model_validator(mode='after')
    def _exactly_one_kind(self) -> 'Part':
        kinds = [
            self.text is not None,
            self.media is not None,
            self.data is not None,
            self.tool_request is not None,
            self.tool_response is not None,
        ]
        if sum(kinds) != 1:
            raise ValueError("a Part must carry exactly one of text, media, data, tool_request, tool_response")
        return self


class Message(GenkitModel):
    """对话中的一条消息"""

    role: Role
    content: list[Part] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None

    @field_validator('content', mode='before')
    @classmethod
    def _text_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [{'text': value}]
        return value

    @property
    def text(self) -> str:
        return ''.join(part.text for part in self.content if part.text is not None)

    @property
    def tool_requests(self) -> list[ToolRequest]:
        return [part.tool_request for part in self.content if part.tool_request is not None]

    @property
    def tool_responses(self) -> list[ToolResponse]:
        return [part.tool_response for part in self.content if part.tool_response is not None]


class ToolDefinition(GenkitModel):
    """传给模型的工具描述"""

    name: str
    description: str = ""
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None


class OutputConfig(GenkitModel):
    """输出格式提示（例如 format='json' 加上 JSON Schema）"""

    format: Optional[str] = None
    json_schema: Optional[dict[str, Any]] = Field(default=None, alias='schema')


class GenerateRequest(GenkitModel):
    """
    标准化的生成请求

    不同的模型实现把这个统一格式转换为各自的 API 格式。

    Attributes:
        messages: 消息历史
        tools: 本次可用的工具
        config: 模型参数（temperature、max_tokens 等）
        output: 输出格式提示
    """

    messages: list[Message] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    output: Optional[OutputConfig] = None
