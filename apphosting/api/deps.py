"""
应用托管发布控制器 - API 依赖
"""
from fastapi import Request

from apphosting.rollout.interfaces import BuildLookup
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.rollout.status import StatusReporter


def get_scheduler(request: Request) -> RolloutScheduler:
    """获取调度器"""
    return request.app.state.scheduler


def get_reporter(request: Request) -> StatusReporter:
    """获取状态报告器"""
    return request.app.state.reporter


def get_build_registry(request: Request) -> BuildLookup:
    """获取构建来源"""
    return request.app.state.builds
