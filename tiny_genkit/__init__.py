"""
tiny_genkit - 简化版 AI 应用运行时

核心组件:
- Genkit: 宿主对象（Registry + 服务生命周期）
- Registry: Action 表和惰性初始化的 Plugin 缓存
- Action: 带名称和输入/输出契约的可调用单元
- Flow: 面向调用方的 Action（HTTP / Reflection / 直接调用）
- Plugin / PluginProvider: 惰性初始化的能力提供者
- generate: 模型 + 工具调用循环
- ActionContext / CancellationSignal: 单次调用上下文和取消信号
- StreamingResult: 增量 + 最终结果
- Config: 配置管理

架构:
- Genkit: 宿主（定义 Action、启动服务）
- Flow / Prompt / Evaluator: 用户逻辑
- Generate: 模型调用与工具执行
- Model: 请求/响应格式 + 模型 Plugin

Web 服务:
- Flow 服务: from tiny_genkit.web import FlowServer
- Reflection 服务: from tiny_genkit.reflection import ReflectionServer
"""

from .action import Action, ActionKind, action_key, parse_action_key
from .config import Config, FlowServerConfig, ReflectionConfig, RuntimeConfig, get_config, set_config
from .context import ActionContext, CancellationSignal
from .errors import (
    ActionNotFoundError,
    AddressInUseError,
    CancellationError,
    DuplicateNameError,
    GenkitError,
    PluginInitializationError,
    PayloadTooLargeError,
    PluginNotFoundError,
    ToolLoopExceededError,
    ToolNotFoundError,
    UnsupportedCapabilityError,
    ValidationError,
)
from .genkit import Genkit, install_shutdown_handlers, shutdown
from .plugin import Plugin, PluginProvider, Provided, plugin
from .registry import Registry
from .stores import FlowState, FlowStateStore, InMemoryFlowStateStore, InMemoryTraceStore, TraceStore
from .streaming import StreamingResult
from .tools import define_tool, tool

# Flow 层
from .flows import Flow, define_flow, define_streaming_flow

# 生成
from .generate import generate, generate_stream
from .evaluator import define_evaluator
from .prompt import Prompt, define_prompt

# Model 层
from .models import (
    GenerateRequest,
    GenerateResponse,
    GenerateResponseChunk,
    Message,
    ModelInfo,
    ModelSupports,
    Part,
    Role,
    ToolRequest,
    ToolResponse,
    define_model,
    openai_compatible,
)

__all__ = [
    # 核心组件
    'Genkit',
    'Registry',
    'Action',
    'ActionKind',
    'ActionContext',
    'CancellationSignal',
    'StreamingResult',
    'Plugin',
    'PluginProvider',
    'Provided',
    'plugin',
    'action_key',
    'parse_action_key',
    'shutdown',
    'install_shutdown_handlers',

    # 配置
    'Config',
    'RuntimeConfig',
    'ReflectionConfig',
    'FlowServerConfig',
    'get_config',
    'set_config',

    # 存储
    'TraceStore',
    'InMemoryTraceStore',
    'FlowState',
    'FlowStateStore',
    'InMemoryFlowStateStore',

    # 错误
    'GenkitError',
    'ValidationError',
    'DuplicateNameError',
    'UnsupportedCapabilityError',
    'ActionNotFoundError',
    'ToolNotFoundError',
    'PayloadTooLargeError',
    'PluginNotFoundError',
    'ToolLoopExceededError',
    'PluginInitializationError',
    'AddressInUseError',
    'CancellationError',

    # Flow 层
    'Flow',
    'define_flow',
    'define_streaming_flow',

    # 生成
    'generate',
    'generate_stream',
    'define_tool',
    'tool',
    'define_evaluator',
    'Prompt',
    'define_prompt',

    # Model 层
    'GenerateRequest',
    'GenerateResponse',
    'GenerateResponseChunk',
    'Message',
    'ModelInfo',
    'ModelSupports',
    'Part',
    'Role',
    'ToolRequest',
    'ToolResponse',
    'define_model',
    'openai_compatible',
]

__version__ = '0.1.0'
