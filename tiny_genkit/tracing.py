"""追踪系统 - 记录每次 Action 调用（含嵌套调用）的执行过程"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional
from uuid import uuid4

from pydantic import BaseModel

if TYPE_CHECKING:
    from .context import ActionContext

logger = logging.getLogger(__name__)


class SpanState(Enum):
    """Span 状态"""
    RUNNING = 'running'
    SUCCESS = 'success'
    ERROR = 'error'


@dataclass
class SpanData:
    """
    Span - 一次 Action 调用

    attributes 中的 genkit:* 键与开发工具约定一致：
    - genkit:type / genkit:name: Action 类型和名称
    - genkit:input / genkit:output: JSON 序列化后的输入输出
    - genkit:state: success | error
    """
    span_id: str
    trace_id: str
    display_name: str
    parent_span_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    state: SpanState = SpanState.RUNNING
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            'spanId': self.span_id,
            'traceId': self.trace_id,
            'displayName': self.display_name,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'attributes': self.attributes,
            'state': self.state.value,
        }
        if self.parent_span_id:
            result['parentSpanId'] = self.parent_span_id
        if self.error:
            result['error'] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'SpanData':
        return cls(
            span_id=data['spanId'],
            trace_id=data['traceId'],
            display_name=data['displayName'],
            parent_span_id=data.get('parentSpanId'),
            start_time=data['startTime'],
            end_time=data.get('endTime'),
            attributes=data.get('attributes', {}),
            state=SpanState(data.get('state', 'running')),
            error=data.get('error'),
        )


@dataclass
class TraceData:
    """Trace - 一次顶层调用及其所有嵌套调用"""
    trace_id: str = field(default_factory=lambda: uuid4().hex)
    display_name: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    spans: dict[str, SpanData] = field(default_factory=dict)

    def add_span(self, span: SpanData) -> None:
        self.spans[span.span_id] = span

    @property
    def root_span(self) -> Optional[SpanData]:
        for span in self.spans.values():
            if span.parent_span_id is None:
                return span
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            'traceId': self.trace_id,
            'displayName': self.display_name,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'spans': {span_id: span.to_dict() for span_id, span in self.spans.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'TraceData':
        return cls(
            trace_id=data['traceId'],
            display_name=data.get('displayName', ''),
            start_time=data['startTime'],
            end_time=data.get('endTime'),
            spans={k: SpanData.from_dict(v) for k, v in data.get('spans', {}).items()},
        )


def to_json_attr(value: Any) -> str:
    """把任意值序列化为 span 属性（无法序列化时退化为 repr）"""
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True, exclude_none=True)
    try:
        return json.dumps(value, ensure_ascii=False, default=_default)
    except (TypeError, ValueError):
        return repr(value)


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode='json', by_alias=True, exclude_none=True)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@asynccontextmanager
async def run_in_span(
    ctx: 'ActionContext',
    name: str,
    attributes: Optional[dict[str, Any]] = None,
) -> AsyncIterator[SpanData]:
    """
    在一个新 span 中执行

    ctx.trace 为空时开启一个新 trace（顶层调用），结束后写入注册表的
    trace store；否则把 span 挂到已有 trace 上。
    调用方在 yield 之后把结果写进 span.attributes。
    """
    is_root = ctx.trace is None
    if is_root:
        ctx.trace = TraceData(display_name=name)

    span = SpanData(
        span_id=uuid4().hex[:16],
        trace_id=ctx.trace.trace_id,
        display_name=name,
        parent_span_id=ctx.span_id,
        attributes=dict(attributes or {}),
    )
    ctx.trace.add_span(span)
    ctx.span_id = span.span_id

    try:
        yield span
    except BaseException as e:
        span.state = SpanState.ERROR
        span.error = str(e) or type(e).__name__
        span.attributes['genkit:state'] = 'error'
        raise
    else:
        span.state = SpanState.SUCCESS
        span.attributes['genkit:state'] = 'success'
    finally:
        span.end_time = time.time()
        if is_root:
            ctx.trace.end_time = span.end_time
            await _save_trace(ctx)


async def _save_trace(ctx: 'ActionContext') -> None:
    store = ctx.registry.trace_store
    if store is None or ctx.trace is None:
        return
    try:
        await store.save(ctx.trace.trace_id, ctx.trace)
    except Exception:
        # 追踪写入失败不影响调用结果
        logger.warning(f"[Tracing] failed to save trace {ctx.trace.trace_id}", exc_info=True)
