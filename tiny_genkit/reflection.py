"""
Reflection 服务 - 供开发工具发现和调用注册表中的 Action

提供 REST API 端点：
- GET  /api/__health - 存活检查
- GET  /api/actions - 列出所有 Action（键为 /{kind}/{name}）
- POST /api/runAction - 调用 Action（?stream=true 时逐行返回增量）
- GET  /api/envs/{env}/traces[/{trace_id}] - 查看 trace
- GET  /api/envs/{env}/flowStates[/{flow_id}] - 查看 Flow 执行状态
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Optional

from fastapi import APIRouter, FastAPI, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .errors import ActionNotFoundError, AddressInUseError, GenkitError, error_body, http_status_for
from .web.server import ServerHandle

if TYPE_CHECKING:
    from .action import Action
    from .registry import Registry

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3100


# ==================== Request Models ====================

class RunActionRequest(BaseModel):
    """runAction 请求"""
    key: str
    input: Any = None


# ==================== Router Factory ====================

def create_reflection_router(registry: 'Registry', env: str = "dev") -> APIRouter:
    """
    创建 Reflection 路由

    Args:
        registry: 要暴露的注册表
        env: 当前环境名称

    Returns:
        FastAPI APIRouter
    """
    router = APIRouter(prefix="/api", tags=["Reflection"])

    @router.get("/__health")
    async def health():
        return {"status": "OK", "env": env}

    @router.get("/actions")
    async def list_actions():
        """列出所有 Action（先初始化所有 Plugin，失败的 Plugin 只记录日志）"""
        failures = await registry.initialize_all_plugins()
        for name, error in failures.items():
            logger.warning(f"[Reflection] plugin {name} failed to initialize: {error}")
        return {key: action.describe() for key, action in registry.list_actions().items()}

    @router.post("/runAction")
    async def run_action(body: RunActionRequest, stream: bool = Query(False)):
        """调用 Action"""
        try:
            action = await _resolve(registry, body.key)
        except GenkitError as e:
            return _error_response(e)

        if stream:
            return StreamingResponse(
                _stream_lines(registry, action, body.input),
                media_type="application/x-ndjson",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        telemetry: dict[str, Any] = {}
        try:
            result = await action.run(body.input, registry=registry, telemetry=telemetry)
        except Exception as e:
            _log_failure(body.key, e)
            return _error_response(e)
        return {
            "result": action.dump_output(result),
            "telemetry": {"traceId": telemetry.get("traceId")},
        }

    # ==================== Trace / FlowState ====================

    @router.get("/envs/{env_name}/traces")
    async def list_traces(
        env_name: str,
        limit: int = Query(20, ge=1, le=1000),
        continuation_token: Optional[str] = Query(None, alias="continuationToken"),
    ):
        store = registry.trace_store
        if store is None:
            return {"traces": [], "continuationToken": None}
        traces, token = await store.list(limit=limit, continuation_token=continuation_token)
        return {"traces": [t.to_dict() for t in traces], "continuationToken": token}

    @router.get("/envs/{env_name}/traces/{trace_id}")
    async def get_trace(env_name: str, trace_id: str):
        store = registry.trace_store
        trace = await store.load(trace_id) if store is not None else None
        if trace is None:
            return _error_response(ActionNotFoundError(f"Trace '{trace_id}' not found"))
        return trace.to_dict()

    @router.get("/envs/{env_name}/flowStates")
    async def list_flow_states(
        env_name: str,
        limit: int = Query(20, ge=1, le=1000),
        continuation_token: Optional[str] = Query(None, alias="continuationToken"),
    ):
        store = registry.flow_state_store
        if store is None:
            return {"flowStates": [], "continuationToken": None}
        states, token = await store.list(limit=limit, continuation_token=continuation_token)
        return {"flowStates": [s.to_dict() for s in states], "continuationToken": token}

    @router.get("/envs/{env_name}/flowStates/{flow_id}")
    async def get_flow_state(env_name: str, flow_id: str):
        store = registry.flow_state_store
        state = await store.load(flow_id) if store is not None else None
        if state is None:
            return _error_response(ActionNotFoundError(f"Flow state '{flow_id}' not found"))
        return state.to_dict()

    return router


def create_reflection_app(registry: 'Registry', env: str = "dev") -> FastAPI:
    app = FastAPI(
        title="tiny_genkit Reflection API",
        description="Discover and invoke registered actions",
    )
    app.include_router(create_reflection_router(registry, env))
    return app


# ==================== Server ====================

class ReflectionServer:
    """
    Reflection 服务

    - 每个 Registry 最多一个；同一个 Registry 再次启动，或者地址被占用时，
      start() 抛 AddressInUseError（宿主记录日志后继续运行）
    - stop_all() 在进程退出时停止所有仍在运行的服务
    """

    _RUNNING: ClassVar[set['ReflectionServer']] = set()

    def __init__(
        self,
        registry: 'Registry',
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        env: str = "dev",
    ):
        self.registry = registry
        self.env = env
        self.app = create_reflection_app(registry, env)
        self._handle = ServerHandle(self.app, host, port, name="ReflectionServer")

    @property
    def host(self) -> str:
        return self._handle.host

    @property
    def port(self) -> int:
        return self._handle.port

    @property
    def url(self) -> str:
        return self._handle.url

    @property
    def running(self) -> bool:
        return self._handle.running

    async def start(self) -> None:
        """
        Raises:
            AddressInUseError: 该 Registry 已有运行中的 Reflection 服务，或地址被占用
        """
        existing = self.registry.reflection_server
        if existing is not None and existing is not self and existing.running:
            raise AddressInUseError(
                f"A reflection server is already running for this registry at {existing.url}",
                details={'url': existing.url},
            )
        self.registry.reflection_server = self
        try:
            await self._handle.start()
        except BaseException:
            self.registry.reflection_server = None
            raise
        ReflectionServer._RUNNING.add(self)
        logger.info(f"[ReflectionServer] started env={self.env} url={self.url}")

    async def stop(self, timeout: float = 5.0) -> None:
        await self._handle.stop(timeout)
        ReflectionServer._RUNNING.discard(self)
        if self.registry.reflection_server is self:
            self.registry.reflection_server = None

    @classmethod
    async def stop_all(cls, timeout: float = 5.0) -> None:
        """停止所有运行中的 Reflection 服务（总等待时间不超过 timeout）"""
        servers = list(cls._RUNNING)
        if not servers:
            return
        logger.info(f"[ReflectionServer] stopping {len(servers)} server(s)")
        results = await asyncio.gather(*(server.stop(timeout) for server in servers), return_exceptions=True)
        for server, result in zip(servers, results):
            if isinstance(result, Exception):
                logger.error(f"[ReflectionServer] failed to stop {server.url}: {result}", exc_info=result)


# ==================== 辅助函数 ====================

async def _resolve(registry: 'Registry', key: str) -> 'Action':
    try:
        action = await registry.resolve_by_key(key)
    except ValueError as e:
        raise ActionNotFoundError(f"Invalid action key '{key}': {e}", details={'key': key}) from e
    if action is None:
        raise ActionNotFoundError(f"Action '{key}' not found", details={'key': key})
    return action


async def _stream_lines(registry: 'Registry', action: 'Action', input: Any):
    """NDJSON：每行一个增量，最后一行是最终结果或错误"""
    telemetry: dict[str, Any] = {}
    result = action.stream(input, registry=registry, telemetry=telemetry)
    try:
        async for chunk in result.stream:
            yield json.dumps(action.dump_chunk(chunk), ensure_ascii=False) + "\n"
        try:
            output = await result.output
        except Exception as e:
            _log_failure(action.key, e)
            yield json.dumps(error_body(e), ensure_ascii=False) + "\n"
            return
        final = {"result": action.dump_output(output), "telemetry": {"traceId": telemetry.get("traceId")}}
        yield json.dumps(final, ensure_ascii=False) + "\n"
    finally:
        # 客户端断开时取消仍在执行的调用
        if not result.done:
            result.cancel()


def _error_response(error: BaseException) -> JSONResponse:
    return JSONResponse(error_body(error), status_code=http_status_for(error))


def _log_failure(key: str, error: BaseException) -> None:
    if isinstance(error, GenkitError):
        logger.warning(f"[Reflection] runAction {key} failed: {error.status} {error.message}")
    else:
        logger.error(f"[Reflection] runAction {key} failed: {error}", exc_info=error)
