"""
Genkit - 宿主对象

Genkit 职责:
- 持有一个 Registry，注册 Plugin 和各类 Action
- 记录已定义的 Flow，供 HTTP 服务暴露
- 启动/停止 Reflection 服务（仅 dev 环境）和 Flow 服务
- 进程退出时统一关闭所有服务和 Plugin

架构:
┌────────────────────────────────────────┐
│  Genkit: 宿主（Registry + 服务生命周期） │
├────────────────────────────────────────┤
│  Flow: 用户逻辑入口                      │
├────────────────────────────────────────┤
│  Generate: 模型 + 工具调用循环            │
├────────────────────────────────────────┤
│  Action: 带契约的可调用单元               │
└────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import logging
import signal
import weakref
from typing import Any, Callable, ClassVar, Optional, Sequence, Union

from .action import Action
from .config import Config, get_config
from .errors import AddressInUseError, GenkitError
from .evaluator import define_evaluator
from .flows import Flow, define_flow, define_streaming_flow
from .generate import generate, generate_stream
from .models.base_llm import ModelInfo, define_model
from .models.llm_response import GenerateResponse
from .plugin import Plugin, PluginProvider, Provided
from .prompt import Prompt, define_prompt
from .reflection import ReflectionServer
from .registry import Registry
from .stores import FlowStateStore, InMemoryFlowStateStore, InMemoryTraceStore, TraceStore
from .streaming import StreamingResult
from .tools import define_tool
from .web import FlowServer

logger = logging.getLogger(__name__)

# 保持对关闭任务的引用，避免被回收
_shutdown_tasks: set[asyncio.Task[None]] = set()


class Genkit:
    """
    宿主对象

    使用方式:
        ai = Genkit(plugins=[openai_compatible(models=["gpt-4o-mini"])],
                    default_model="openai/gpt-4o-mini")

        @ai.define_flow()
        async def joke(topic: str, ctx) -> str:
            response = await ai.generate(prompt=f"讲一个关于{topic}的笑话", context=ctx)
            return response.text

        ai.serve()  # GENKIT_ENV=dev 时同时启动 Reflection 服务
    """

    _INSTANCES: ClassVar['weakref.WeakSet[Genkit]'] = weakref.WeakSet()

    def __init__(
        self,
        *,
        plugins: Optional[Sequence[PluginProvider]] = None,
        default_model: Optional[str] = None,
        trace_store: Union[str, TraceStore, None] = None,
        flow_state_store: Union[str, FlowStateStore, None] = None,
        flow_server: Optional[bool] = None,
        log_level: Optional[str] = None,
        config: Optional[Config] = None,
        registry: Optional[Registry] = None,
    ):
        """
        初始化宿主

        Args:
            plugins: PluginProvider 列表（注册时不会初始化）
            default_model: generate 未指定模型时使用的模型名称
            trace_store: TraceStore 实例，或提供它的 Plugin 名称（"plugin" 或 "plugin/id"）
            flow_state_store: 同上，FlowStateStore
            flow_server: 是否启动 Flow 服务（默认读取配置）
            log_level: tiny_genkit 日志级别（默认读取配置）
            config: 配置对象
            registry: 使用已有的 Registry（默认新建）
        """
        self.config = config or get_config()
        self.registry = registry or Registry()
        self.default_model = default_model or self.config.runtime.default_model
        self.flows: list[Flow] = []
        self.reflection_server: Optional[ReflectionServer] = None
        self.flow_server: Optional[FlowServer] = None
        self._flow_server_enabled = self.config.flow_server.enabled if flow_server is None else flow_server

        logging.getLogger('tiny_genkit').setLevel((log_level or self.config.runtime.log_level).upper())

        for provider in plugins or ():
            logger.debug(f"[Genkit] registering plugin {provider.name}")
            self.registry.register_plugin(provider)

        self._trace_store_name: Optional[str] = None
        if isinstance(trace_store, str):
            self._trace_store_name = trace_store
        elif trace_store is not None:
            self.registry.trace_store = trace_store

        self._flow_state_store_name: Optional[str] = None
        if isinstance(flow_state_store, str):
            self._flow_state_store_name = flow_state_store
        elif flow_state_store is not None:
            self.registry.flow_state_store = flow_state_store

        Genkit._INSTANCES.add(self)

    @property
    def is_dev(self) -> bool:
        return self.config.runtime.is_dev

    # ==================== 定义 Action ====================

    def define_flow(self, name: Union[str, Callable[..., Any], None] = None, fn: Optional[Callable[..., Any]] = None, **kwargs: Any):
        """
        定义 Flow（可作为装饰器）

        用法:
            flow = ai.define_flow("greet", greet_fn)

            @ai.define_flow()
            async def greet(name: str) -> str: ...
        """
        return self._define(name, fn, lambda n, f: self._track(define_flow(self.registry, n, f, **kwargs)))

    def define_streaming_flow(self, name: Union[str, Callable[..., Any], None] = None, fn: Optional[Callable[..., Any]] = None, **kwargs: Any):
        """定义声明了增量契约的 Flow（可作为装饰器）"""
        return self._define(name, fn, lambda n, f: self._track(define_streaming_flow(self.registry, n, f, **kwargs)))

    def define_model(self, name: Union[str, Callable[..., Any], None] = None, fn: Optional[Callable[..., Any]] = None, *, info: Optional[ModelInfo] = None, **kwargs: Any):
        """定义模型（可作为装饰器）"""
        return self._define(name, fn, lambda n, f: define_model(self.registry, n, f, info=info, **kwargs))

    def define_tool(self, fn: Optional[Callable[..., Any]] = None, **kwargs: Any):
        """
        定义工具（可作为装饰器）

        用法:
            @ai.define_tool(description="查询天气")
            def get_weather(city: str) -> str: ...
        """
        def register(f: Callable[..., Any]) -> Action:
            return define_tool(self.registry, f, **kwargs)
        return register(fn) if fn is not None else register

    def define_evaluator(self, name: Union[str, Callable[..., Any], None] = None, fn: Optional[Callable[..., Any]] = None, **kwargs: Any):
        """定义评估器（可作为装饰器）"""
        return self._define(name, fn, lambda n, f: define_evaluator(self.registry, n, f, **kwargs))

    def define_prompt(self, name: Union[str, Callable[..., Any], None] = None, fn: Optional[Callable[..., Any]] = None, **kwargs: Any):
        """定义 Prompt（可作为装饰器；未指定模型时使用默认模型）"""
        kwargs.setdefault('model', self.default_model)
        kwargs.setdefault('max_turns', self.config.runtime.max_turns)
        return self._define(name, fn, lambda n, f: define_prompt(self.registry, n, f, **kwargs))

    # ==================== 生成 ====================

    async def generate(self, **kwargs: Any) -> GenerateResponse:
        """执行生成循环（参数同 tiny_genkit.generate.generate）"""
        return await generate(self.registry, **self._generate_defaults(kwargs))

    def generate_stream(self, **kwargs: Any) -> StreamingResult[GenerateResponse]:
        """流式执行生成循环"""
        return generate_stream(self.registry, **self._generate_defaults(kwargs))

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """
        启动宿主

        1. 解析按名称配置的 TraceStore / FlowStateStore
        2. dev 环境启动 Reflection 服务（地址被占用时只记录日志）
        3. 配置启用时启动 Flow 服务
        """
        logger.info(f"[Genkit] START env={self.config.runtime.env} flows={len(self.flows)}")
        await self._resolve_stores()
        if self.is_dev:
            await self._start_reflection_server()
        if self._flow_server_enabled:
            await self._start_flow_server()
        logger.info(
            f"[Genkit] SUCCESS reflection={self.reflection_server.url if self.reflection_server else None} "
            f"flow_server={self.flow_server.url if self.flow_server else None}"
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """停止本宿主的服务，并执行 Plugin 的 shutdown 钩子"""
        timeout = self.config.runtime.shutdown_timeout if timeout is None else timeout
        if self.flow_server is not None:
            await self.flow_server.stop(timeout)
            self.flow_server = None
        if self.reflection_server is not None:
            await self.reflection_server.stop(timeout)
            self.reflection_server = None
        await self.registry.shutdown_plugins()

    async def __aenter__(self) -> 'Genkit':
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def serve(self) -> None:
        """
        阻塞运行，直到收到 SIGTERM/SIGINT

        收到信号后停止所有服务和 Plugin，然后退出进程。
        """
        async def main() -> None:
            install_shutdown_handlers(self.config.runtime.shutdown_timeout)
            await self.start()
            await asyncio.Event().wait()

        asyncio.run(main())

    # ==================== 内部方法 ====================

    def _define(self, name: Any, fn: Optional[Callable[..., Any]], register: Callable[[str, Callable[..., Any]], Any]):
        if callable(name) and fn is None:
            fn, name = name, None
        if fn is not None:
            return register(name or fn.__name__, fn)

        def decorator(f: Callable[..., Any]) -> Any:
            return register(name or f.__name__, f)
        return decorator

    def _track(self, flow: Flow) -> Flow:
        self.flows.append(flow)
        return flow

    def _generate_defaults(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        if kwargs.get('model') is None:
            if not self.default_model:
                raise GenkitError("No model specified and no default model configured")
            kwargs['model'] = self.default_model
        kwargs.setdefault('max_turns', self.config.runtime.max_turns)
        return kwargs

    async def _resolve_stores(self) -> None:
        if self._trace_store_name:
            self.registry.trace_store = await self._resolve_provided(
                self._trace_store_name, 'trace_stores', 'traceStore', 'trace store',
            )
        elif self.registry.trace_store is None and self.is_dev:
            self.registry.trace_store = InMemoryTraceStore()

        if self._flow_state_store_name:
            self.registry.flow_state_store = await self._resolve_provided(
                self._flow_state_store_name, 'flow_state_stores', 'flowStateStore', 'flow state store',
            )
        elif self.registry.flow_state_store is None and self.is_dev:
            self.registry.flow_state_store = InMemoryFlowStateStore()

    async def _resolve_provided(self, name: str, field: str, label: str, what: str) -> Any:
        """按 "plugin" 或 "plugin/id" 解析 Plugin 提供的存储"""
        plugin_name, _, store_id = name.partition('/')
        plugin: Plugin = await self.registry.resolve_plugin(plugin_name)
        provided: list[Provided[Any]] = getattr(plugin, field)
        if not provided:
            raise GenkitError(f"Unable to resolve provided `{label}` for plugin: {plugin_name}")
        if len(provided) == 1 and not store_id:
            return provided[0].value
        if len(provided) > 1 and not store_id:
            ids = ', '.join(p.id for p in provided)
            raise GenkitError(
                f"Plugin {plugin_name} provides more than one {what} implementation ({ids}), "
                f"please specify the {what} id (e.g. \"{plugin_name}/{provided[0].id}\")"
            )
        for p in provided:
            if p.id == store_id:
                return p.value
        raise GenkitError(f"Plugin {plugin_name} does not provide {what} {store_id}")

    async def _start_reflection_server(self) -> None:
        server = ReflectionServer(
            self.registry,
            host=self.config.reflection.host,
            port=self.config.reflection.port,
            env=self.config.runtime.env,
        )
        try:
            await server.start()
        except AddressInUseError as e:
            logger.warning(f"[Genkit] reflection server not started: {e}")
            return
        self.reflection_server = server

    async def _start_flow_server(self) -> None:
        cfg = self.config.flow_server
        server = FlowServer(
            lambda: self.flows,
            host=cfg.host,
            port=cfg.port,
            path_prefix=cfg.path_prefix,
            cors_origins=cfg.cors_origins,
            max_body_size=cfg.max_body_size,
        )
        prefix = cfg.path_prefix.strip('/')
        for flow in self.flows:
            logger.info(f"[Genkit]  - /{prefix + '/' if prefix else ''}{flow.name}")
        await server.start()
        self.flow_server = server
        logger.info(f"[Genkit] flow server listening on port {server.port}")


# ==================== 进程生命周期 ====================

async def shutdown(timeout: Optional[float] = None) -> None:
    """
    停止所有 Reflection 服务、Flow 服务，并执行所有 Plugin 的 shutdown 钩子

    总等待时间不超过 timeout。
    """
    timeout = get_config().runtime.shutdown_timeout if timeout is None else timeout
    logger.info("[Genkit] shutting down reflection servers, flow servers and plugins")

    async def stop_everything() -> None:
        results = await asyncio.gather(
            ReflectionServer.stop_all(timeout),
            FlowServer.stop_all(timeout),
            return_exceptions=True,
        )
        results += await asyncio.gather(
            *(instance.registry.shutdown_plugins() for instance in list(Genkit._INSTANCES)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"[Genkit] shutdown step failed: {result}", exc_info=result)

    try:
        await asyncio.wait_for(stop_everything(), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[Genkit] shutdown did not finish within {timeout}s")


def install_shutdown_handlers(timeout: Optional[float] = None) -> None:
    """
    在当前事件循环上安装 SIGTERM/SIGINT 处理器

    收到信号后执行 shutdown()，然后以 SystemExit(0) 结束事件循环。
    """
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _on_signal, sig, timeout)


def _on_signal(sig: signal.Signals, timeout: Optional[float]) -> None:
    logger.info(f"[Genkit] received {sig.name}, shutting down")
    task = asyncio.ensure_future(_shutdown_and_exit(timeout))
    _shutdown_tasks.add(task)
    task.add_done_callback(_shutdown_tasks.discard)


async def _shutdown_and_exit(timeout: Optional[float]) -> None:
    await shutdown(timeout)
    raise SystemExit(0)
