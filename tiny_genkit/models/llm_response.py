"""生成响应的标准化格式"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import Field

from .llm_request import GenerateRequest, GenkitModel, Message, Part, ToolRequest


class FinishReason(str, Enum):
    """生成结束原因"""
    STOP = 'stop'
    TOOL_CALL = 'tool-call'
    LENGTH = 'length'
    BLOCKED = 'blocked'
    ERROR = 'error'
    OTHER = 'other'
    UNKNOWN = 'unknown'


class Candidate(GenkitModel):
    """一个候选回复"""

    index: int = 0
    message: Message
    finish_reason: FinishReason = FinishReason.UNKNOWN
    finish_message: Optional[str] = None


class GenerationUsage(GenkitModel):
    """token 使用统计"""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class GenerateResponse(GenkitModel):
    """
    标准化的生成响应

    Attributes:
        candidates: 候选回复（生成循环只使用第一个）
        usage: token 使用统计
        custom: 模型实现附带的原始信息
        request: 产生这次响应的请求（生成循环结束时填入最后一次请求）
    """

    candidates: list[Candidate] = Field(default_factory=list)
    usage: Optional[GenerationUsage] = None
    custom: Any = None
    request: Optional[GenerateRequest] = None

    @property
    def candidate(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def message(self) -> Optional[Message]:
        candidate = self.candidate
        return candidate.message if candidate else None

    @property
    def finish_reason(self) -> Optional[FinishReason]:
        candidate = self.candidate
        return candidate.finish_reason if candidate else None

    @property
    def text(self) -> str:
        message = self.message
        return message.text if message else ""

    @property
    def tool_requests(self) -> list[ToolRequest]:
        """第一个候选中的工具调用（手动模式下由调用方自行处理）"""
        message = self.message
        return message.tool_requests if message else []


class GenerateResponseChunk(GenkitModel):
    """流式生成的增量"""

    index: int = 0
    content: list[Part] = Field(default_factory=list)
    custom: Any = None

    @property
    def text(self) -> str:
        return ''.join(part.text for part in self.content if part.text is not None)
