"""Plugin - 惰性初始化的能力提供者"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, Optional, TypeVar

if TYPE_CHECKING:
    from .action import Action
    from .stores import FlowStateStore, TraceStore

T = TypeVar('T')


@dataclass
class Provided(Generic[T]):
    """Plugin 提供的一个命名值（例如某个 trace store）"""
    id: str
    value: T


@dataclass
class Plugin:
    """
    Plugin 初始化的结果

    每种能力一个显式的可选字段，Registry 按字段取用：
    - models / tools / evaluators: 注册到解析它的 Registry 中的 Action
    - trace_stores / flow_state_stores: 可按 "plugin/id" 选择的存储
    - telemetry / logger: 可观测性配置（原样保存，由宿主使用）
    - resources: 共享的客户端、凭证等
    - shutdown: 进程退出时执行的异步钩子（例如刷新遥测数据）
    """
    models: list['Action'] = field(default_factory=list)
    tools: list['Action'] = field(default_factory=list)
    evaluators: list['Action'] = field(default_factory=list)
    trace_stores: list[Provided['TraceStore']] = field(default_factory=list)
    flow_state_stores: list[Provided['FlowStateStore']] = field(default_factory=list)
    telemetry: Optional[Any] = None
    logger: Optional[Any] = None
    resources: dict[str, Any] = field(default_factory=dict)
    shutdown: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def actions(self) -> list['Action']:
        return [*self.models, *self.tools, *self.evaluators]


PluginInitializer = Callable[[], Awaitable[Plugin]]


@dataclass
class PluginProvider:
    """
    Plugin 提供者

    注册时不会执行 initializer；第一次解析时才执行，且每个 Registry 最多执行一次。
    """
    name: str
    initializer: PluginInitializer

    def __post_init__(self) -> None:
        if not self.name or '/' in self.name:
            raise ValueError(f"Invalid plugin name: '{self.name}'")


def plugin(name: str) -> Callable[[PluginInitializer], PluginProvider]:
    """
    把一个异步初始化函数声明为 PluginProvider

    示例:
        @plugin("my-store")
        async def my_store():
            return Plugin(trace_stores=[Provided("default", MyStore())])
    """
    def decorator(initializer: PluginInitializer) -> PluginProvider:
        return PluginProvider(name=name, initializer=initializer)
    return decorator
