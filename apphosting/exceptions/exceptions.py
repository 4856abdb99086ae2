# 应用托管发布控制器 - 自定义异常类
"""发布控制异常定义"""

from typing import Any, Dict, List, Optional


# RPC 状态码（google.rpc.Code）
RPC_UNKNOWN = 2
RPC_INVALID_ARGUMENT = 3
RPC_NOT_FOUND = 5
RPC_FAILED_PRECONDITION = 9
RPC_ABORTED = 10
RPC_UNAVAILABLE = 14


class RolloutException(Exception):
    """
    发布异常基类

    Attributes:
        code: 业务错误码
        message: 错误消息
        status_code: HTTP状态码
        rpc_code: 记录到 Rollout.error 时使用的 RPC 状态码
        detail: 详细信息
    """
    code: int = 500
    message: str = "发布控制器内部错误"
    status_code: int = 500
    rpc_code: int = RPC_UNKNOWN

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        errors: Optional[List[Dict]] = None
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.detail = detail
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = {
            "code": self.code,
            "message": self.message,
            "data": self.detail
        }
        if self.errors:
            result["errors"] = self.errors
        return result

    def to_status(self):
        """转换为写入 Rollout.error 的状态载荷"""
        from apphosting.rollout.models import Status

        details = [] if self.detail is None else [self.detail]
        return Status(code=self.rpc_code, message=self.message, details=details)


class InvalidPolicy(RolloutException):
    """发布策略非法 - 422"""
    code = 422
    message = "发布策略不合法"
    status_code = 422
    rpc_code = RPC_INVALID_ARGUMENT

    def __init__(self, message: str = "发布策略不合法", stage_index: Optional[int] = None, **kwargs):
        self.stage_index = stage_index
        if stage_index is not None:
            message = f"第 {stage_index} 阶段: {message}"
        super().__init__(message=message, **kwargs)


class InvalidSplit(RolloutException):
    """流量分配非法 - 422"""
    code = 422
    message = "流量分配不合法"
    status_code = 422
    rpc_code = RPC_INVALID_ARGUMENT


class BuildNotReady(RolloutException):
    """构建未就绪 - 409"""
    code = 409
    message = "目标构建尚未就绪"
    status_code = 409
    rpc_code = RPC_FAILED_PRECONDITION


class BuildFailed(RolloutException):
    """构建失败 - 409"""
    code = 409
    message = "目标构建失败"
    status_code = 409
    rpc_code = RPC_FAILED_PRECONDITION

    def __init__(self, build: str, error=None, **kwargs):
        self.build = build
        self.build_error = error
        message = f"构建 {build} 失败"
        if error is not None and error.message:
            message = f"{message}: {error.message}"
        super().__init__(message=message, **kwargs)

    def to_status(self):
        """构建自身的错误原样透传"""
        if self.build_error is not None:
            return self.build_error
        return super().to_status()


class TransportError(RolloutException):
    """流量下发失败 - 503"""
    code = 503
    message = "流量下发失败"
    status_code = 503
    rpc_code = RPC_UNAVAILABLE

    def __init__(self, message: str = "流量下发失败", attempts: int = 0, **kwargs):
        self.attempts = attempts
        super().__init__(message=message, **kwargs)


class RolloutConflict(RolloutException):
    """发布冲突 - 409"""
    code = 409
    message = "该后端已有进行中的发布"
    status_code = 409
    rpc_code = RPC_FAILED_PRECONDITION


class RolloutNotFound(RolloutException):
    """发布不存在 - 404"""
    code = 404
    message = "发布不存在"
    status_code = 404
    rpc_code = RPC_NOT_FOUND

    def __init__(self, resource: str = "发布", resource_id: Any = None, **kwargs):
        if resource_id:
            message = f"{resource} ({resource_id}) 不存在"
        else:
            message = f"{resource}不存在"
        super().__init__(message=message, **kwargs)


class EtagMismatch(RolloutException):
    """乐观锁冲突 - 409"""
    code = 409
    message = "资源已被修改，etag 不匹配"
    status_code = 409
    rpc_code = RPC_ABORTED

    def __init__(self, name: str, expected: str, actual: str, **kwargs):
        self.name = name
        self.expected = expected
        self.actual = actual
        message = f"{name} 已被修改 (etag {expected} != {actual})"
        super().__init__(message=message, **kwargs)
