"""
Flow 层 - 面向调用方的入口

这一层把用户的处理函数包装为 flow 类型的 Action，提供：
- Flow: run / stream / 直接调用
- define_flow / define_streaming_flow: 创建并注册 Flow

设计理念:
- Flow 是无状态的，每次调用独立
- 处理函数通过 ctx 调用模型、工具和其他 Flow（嵌套调用共享 trace）
- 同一个 Flow 可以通过 HTTP、Reflection 或直接调用执行
"""

from .flow import Flow, define_flow, define_streaming_flow, flow_action

__all__ = [
    'Flow',
    'define_flow',
    'define_streaming_flow',
    'flow_action',
]
