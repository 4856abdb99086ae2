# 应用托管发布控制器 - 异常模块
"""自定义异常类和异常处理"""

from .exceptions import (
    RolloutException,
    InvalidPolicy,
    InvalidSplit,
    BuildNotReady,
    BuildFailed,
    TransportError,
    RolloutConflict,
    RolloutNotFound,
    EtagMismatch,
)

__all__ = [
    "RolloutException",
    "InvalidPolicy",
    "InvalidSplit",
    "BuildNotReady",
    "BuildFailed",
    "TransportError",
    "RolloutConflict",
    "RolloutNotFound",
    "EtagMismatch",
]
