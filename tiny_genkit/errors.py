"""错误类型 - 运行时所有可预期的失败都用这里的异常表示"""

from __future__ import annotations

from typing import Any, Optional


class GenkitError(Exception):
    """
    所有运行时错误的基类

    每个错误带有一个规范状态码（status）和对应的 HTTP 状态码，
    传输层（Flow 服务、Reflection 服务）据此生成结构化错误响应。
    """

    status: str = "INTERNAL"
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """转换为错误响应体"""
        result = {
            'status': self.status,
            'message': self.message,
        }
        if self.details is not None:
            result['details'] = self.details
        return result


class ValidationError(GenkitError):
    """
    输入/输出不符合契约

    source='input' 时是调用方的错误（400），
    source='output' 时是处理函数的错误（500）。
    """

    def __init__(self, message: str, details: Optional[Any] = None, source: str = "input"):
        super().__init__(message, details)
        self.source = source

    @property
    def status(self) -> str:  # type: ignore[override]
        return "INVALID_ARGUMENT" if self.source == "input" else "INTERNAL"

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 400 if self.source == "input" else 500


class DuplicateNameError(GenkitError):
    """同一个 Registry 中重复注册了同名的 Action 或 Plugin"""
    status = "ALREADY_EXISTS"
    http_status = 409


class UnsupportedCapabilityError(GenkitError):
    """模型不支持请求的能力（例如工具调用）"""
    status = "FAILED_PRECONDITION"
    http_status = 400


class ActionNotFoundError(GenkitError):
    """Registry 中找不到指定的 Action"""
    status = "NOT_FOUND"
    http_status = 404


class ToolNotFoundError(ActionNotFoundError):
    """模型请求了一个未注册或不在本次工具集中的工具"""


class PluginNotFoundError(GenkitError):
    """Registry 中找不到指定的 Plugin"""
    status = "NOT_FOUND"
    http_status = 404


class ToolLoopExceededError(GenkitError):
    """工具调用往返次数超过上限"""
    status = "RESOURCE_EXHAUSTED"
    http_status = 500


class PayloadTooLargeError(GenkitError):
    """HTTP 请求体超过大小上限"""
    status = "RESOURCE_EXHAUSTED"
    http_status = 413


class PluginInitializationError(GenkitError):
    """Plugin 初始化失败（结果被永久缓存）"""
    status = "UNAVAILABLE"
    http_status = 503

    def __init__(self, plugin_name: str, cause: BaseException):
        super().__init__(
            f"Plugin '{plugin_name}' failed to initialize: {cause}",
            details={'plugin': plugin_name, 'cause': type(cause).__name__},
        )
        self.plugin_name = plugin_name


class AddressInUseError(GenkitError):
    """Reflection 服务的地址已被占用"""
    status = "UNAVAILABLE"
    http_status = 503


class CancellationError(GenkitError):
    """调用被取消（调用方取消、超时或进程关闭）"""
    status = "CANCELLED"
    http_status = 499


def error_body(error: BaseException) -> dict[str, Any]:
    """把任意异常转换为结构化错误响应体"""
    if isinstance(error, GenkitError):
        return {'error': error.to_dict()}
    return {
        'error': {
            'status': 'INTERNAL',
            'message': str(error) or type(error).__name__,
        }
    }


def http_status_for(error: BaseException) -> int:
    """异常对应的 HTTP 状态码"""
    if isinstance(error, GenkitError):
        return error.http_status
    return 500
