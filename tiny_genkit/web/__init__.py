"""
Web 服务模块

通过 HTTP 暴露 Flow：
- FlowServer: 服务封装类
- create_flow_app / create_flow_router: 应用和路由工厂

使用方式:
    from tiny_genkit import Genkit
    from tiny_genkit.web import FlowServer

    ai = Genkit()
    ai.define_flow("greet", lambda name: f"你好, {name}")
    FlowServer(lambda: ai.flows).run()
"""

from .api import create_flow_router
from .app import FlowServer, create_flow_app

__all__ = ['FlowServer', 'create_flow_app', 'create_flow_router']
