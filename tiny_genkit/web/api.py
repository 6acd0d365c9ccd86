"""
Flow 路由定义

每个 Flow 暴露为一个端点：
- POST /{path_prefix}{flow_name} - 请求体 {"data": input}，响应 {"result": output}
- POST /{path_prefix}{flow_name}?stream=true - 流式调用 (SSE)
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Union

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..errors import (
    ActionNotFoundError,
    GenkitError,
    PayloadTooLargeError,
    ValidationError,
    error_body,
    http_status_for,
)

if TYPE_CHECKING:
    from ..flows import Flow

logger = logging.getLogger(__name__)

FlowSource = Union[Iterable['Flow'], Callable[[], Iterable['Flow']]]


def create_flow_router(
    flows: FlowSource,
    path_prefix: str = "",
    max_body_size: Optional[int] = None,
) -> APIRouter:
    """
    创建 Flow 路由

    Args:
        flows: Flow 列表，或者返回 Flow 列表的函数（请求时才读取，支持之后注册的 Flow）
        path_prefix: 路径前缀（例如 "api/"）
        max_body_size: 请求体大小上限（字节），边读边计数，超过返回 413

    Returns:
        FastAPI APIRouter
    """
    router = APIRouter(tags=["Flows"])
    prefix = path_prefix.strip('/')
    route = f"/{prefix}/{{flow_name:path}}" if prefix else "/{flow_name:path}"

    def find_flow(name: str) -> 'Flow':
        source = flows() if callable(flows) else flows
        for flow in source:
            if flow.name == name:
                return flow
        raise ActionNotFoundError(f"Flow '{name}' not found", details={'flow': name})

    @router.post(route)
    async def run_flow(flow_name: str, request: Request, stream: bool = Query(False)):
        """调用 Flow"""
        try:
            flow = find_flow(flow_name)
            data = await _read_data(request, max_body_size)
        except GenkitError as e:
            return _error_response(e)

        metadata = {'headers': dict(request.headers)}

        if stream:
            return StreamingResponse(
                _sse_frames(flow, data, metadata),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                },
            )

        try:
            result = await flow.run(data, metadata=metadata)
        except Exception as e:
            _log_failure(flow_name, e)
            return _error_response(e)
        return {"result": flow.action.dump_output(result)}

    return router


async def _read_data(request: Request, max_body_size: Optional[int] = None) -> Any:
    """请求体必须是 {"data": ...} 形式的 JSON"""
    raw = bytearray()
    async for part in request.stream():
        raw.extend(part)
        if max_body_size is not None and len(raw) > max_body_size:
            raise PayloadTooLargeError(f"Request body exceeds {max_body_size} bytes")
    if not raw:
        return None
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object of the form {"data": ...}')
    return body.get('data')


async def _sse_frames(flow: 'Flow', data: Any, metadata: dict[str, Any]):
    """SSE：每个增量一帧 {"message": chunk}，最后一帧是 {"result": ...} 或 {"error": ...}"""
    result = flow.stream(data, metadata=metadata)
    try:
        async for chunk in result.stream:
            frame = json.dumps({"message": flow.action.dump_chunk(chunk)}, ensure_ascii=False)
            yield f"data: {frame}\n\n"
        try:
            output = await result.output
        except Exception as e:
            _log_failure(flow.name, e)
            yield f"data: {json.dumps(error_body(e), ensure_ascii=False)}\n\n"
            return
        frame = json.dumps({"result": flow.action.dump_output(output)}, ensure_ascii=False)
        yield f"data: {frame}\n\n"
    finally:
        if not result.done:
            result.cancel()


def _error_response(error: BaseException) -> JSONResponse:
    return JSONResponse(error_body(error), status_code=http_status_for(error))


def _log_failure(name: str, error: BaseException) -> None:
    if isinstance(error, GenkitError):
        logger.warning(f"[FlowServer] flow {name} failed: {error.status} {error.message}")
    else:
        logger.error(f"[FlowServer] flow {name} failed: {error}", exc_info=error)
