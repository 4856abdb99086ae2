# 应用托管发布控制器 - 内存实现
"""构建注册表与流量后端的本地实现"""

from dataclasses import replace
from typing import Dict, List, Optional, Tuple
import structlog

from apphosting.exceptions import RolloutNotFound, TransportError
from .interfaces import BuildLookup, TrafficBackend
from .models import Build, BuildState, Status
from .traffic import TrafficSet

logger = structlog.get_logger()


class InMemoryBuildRegistry(BuildLookup):
    """内存构建注册表"""

    def __init__(self):
        self._builds: Dict[str, Build] = {}

    def register(self, build: Build) -> Build:
        """登记构建"""
        self._builds[build.name] = build
        logger.info("登记构建", build=build.name, state=build.state.value)
        return build

    def set_state(
        self,
        name: str,
        state: BuildState,
        error: Optional[Status] = None
    ) -> Build:
        """更新构建状态（模拟外部构建流水线）"""
        build = self._builds.get(name)
        if build is None:
            raise RolloutNotFound("构建", name)
        build = replace(build, state=state, error=error)
        self._builds[name] = build
        logger.info("构建状态变更", build=name, state=state.value)
        return build

    async def get_build(self, ref: str) -> Build:
        build = self._builds.get(ref)
        if build is None:
            raise RolloutNotFound("构建", ref)
        return build


class InMemoryTrafficBackend(TrafficBackend):
    """
    内存流量后端

    live 保存各后端线上分配；fail_next 可注入连续失败。
    """

    def __init__(self):
        self.live: Dict[str, TrafficSet] = {}
        self.attempts: List[Tuple[str, TrafficSet]] = []
        self._failures = 0
        self._failure_message = "流量后端不可用"

    def fail_next(self, count: int = 1, message: str = "流量后端不可用"):
        """接下来的 count 次下发失败"""
        self._failures = count
        self._failure_message = message

    @property
    def apply_count(self) -> int:
        return len(self.attempts)

    async def apply_traffic(self, backend: str, traffic_set: TrafficSet) -> None:
        self.attempts.append((backend, traffic_set))
        if self._failures > 0:
            self._failures -= 1
            raise TransportError(self._failure_message)
        self.live[backend] = traffic_set
