"""存储接口 - Trace 和 Flow 状态的持久化边界"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

from typing_extensions import override

from .tracing import TraceData


# ==================== TraceStore ====================

class TraceStore(ABC):
    """
    Trace 存储服务

    设计原则（与 FlowStateStore 一致）:
    - load: 只获取，不存在返回 None
    - save: 覆盖写入整个 trace
    - list: 按开始时间倒序分页

    运行时只依赖这个窄接口，持久化由外部实现（数据库、文件等）提供。
    """

    @abstractmethod
    async def save(self, trace_id: str, trace: TraceData) -> None:
        ...

    @abstractmethod
    async def load(self, trace_id: str) -> Optional[TraceData]:
        ...

    @abstractmethod
    async def list(
        self,
        limit: int = 20,
        continuation_token: Optional[str] = None,
    ) -> tuple[list[TraceData], Optional[str]]:
        """
        列出 trace

        Returns:
            (trace 列表, 下一页的 continuation_token；没有更多时为 None)
        """
        ...


class InMemoryTraceStore(TraceStore):
    """内存 Trace 存储（开发环境默认）"""

    def __init__(self, max_traces: int = 1000):
        self._traces: dict[str, TraceData] = {}
        self._max_traces = max_traces

    @override
    async def save(self, trace_id: str, trace: TraceData) -> None:
        self._traces[trace_id] = trace
        # 超出容量时丢弃最早的 trace
        while len(self._traces) > self._max_traces:
            oldest = next(iter(self._traces))
            del self._traces[oldest]

    @override
    async def load(self, trace_id: str) -> Optional[TraceData]:
        return self._traces.get(trace_id)

    @override
    async def list(
        self,
        limit: int = 20,
        continuation_token: Optional[str] = None,
    ) -> tuple[list[TraceData], Optional[str]]:
        traces = sorted(self._traces.values(), key=lambda t: t.start_time, reverse=True)
        return _paginate(traces, limit, continuation_token)


# ==================== FlowStateStore ====================

@dataclass
class FlowState:
    """
    Flow 执行状态 - 记录一次 Flow 调用

    status: running | done | error
    """
    flow_id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    input: Any = None
    status: str = "running"
    output: Any = None
    error: Optional[dict[str, Any]] = None
    trace_ids: list[str] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            'flowId': self.flow_id,
            'name': self.name,
            'input': self.input,
            'status': self.status,
            'traceIds': self.trace_ids,
            'startTime': self.start_time,
            'endTime': self.end_time,
        }
        if self.status == 'done':
            result['output'] = self.output
        if self.error is not None:
            result['error'] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'FlowState':
        return cls(
            flow_id=data['flowId'],
            name=data.get('name', ''),
            input=data.get('input'),
            status=data.get('status', 'running'),
            output=data.get('output'),
            error=data.get('error'),
            trace_ids=data.get('traceIds', []),
            start_time=data['startTime'],
            end_time=data.get('endTime'),
        )


class FlowStateStore(ABC):
    """Flow 状态存储服务"""

    @abstractmethod
    async def save(self, flow_id: str, state: FlowState) -> None:
        ...

    @abstractmethod
    async def load(self, flow_id: str) -> Optional[FlowState]:
        ...

    @abstractmethod
    async def list(
        self,
        limit: int = 20,
        continuation_token: Optional[str] = None,
    ) -> tuple[list[FlowState], Optional[str]]:
        ...

    @abstractmethod
    async def delete(self, flow_id: str) -> bool:
        ...


class InMemoryFlowStateStore(FlowStateStore):
    """内存 Flow 状态存储"""

    def __init__(self):
        self._states: dict[str, FlowState] = {}

    @override
    async def save(self, flow_id: str, state: FlowState) -> None:
        self._states[flow_id] = state

    @override
    async def load(self, flow_id: str) -> Optional[FlowState]:
        return self._states.get(flow_id)

    @override
    async def list(
        self,
        limit: int = 20,
        continuation_token: Optional[str] = None,
    ) -> tuple[list[FlowState], Optional[str]]:
        states = sorted(self._states.values(), key=lambda s: s.start_time, reverse=True)
        return _paginate(states, limit, continuation_token)

    @override
    async def delete(self, flow_id: str) -> bool:
        if flow_id in self._states:
            del self._states[flow_id]
            return True
        return False


def _paginate(items: list, limit: int, continuation_token: Optional[str]) -> tuple[list, Optional[str]]:
    """continuation_token 是下一页的起始偏移量"""
    start = int(continuation_token) if continuation_token else 0
    end = start + limit
    next_token = str(end) if end < len(items) else None
    return items[start:end], next_token
