# 应用托管发布控制器 - 外部接口
"""构建查询、流量下发与时钟"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import Build
from .traffic import TrafficSet


class BuildLookup(ABC):
    """构建查询"""

    @abstractmethod
    async def get_build(self, ref: str) -> Build:
        """
        查询构建

        Raises:
            RolloutNotFound: 构建不存在
        """


class TrafficBackend(ABC):
    """流量下发"""

    @abstractmethod
    async def apply_traffic(self, backend: str, traffic_set: TrafficSet) -> None:
        """
        下发完整的流量分配

        必须可以用同一参数安全重试（全量而非增量）。

        Raises:
            TransportError: 下发失败
        """


class Clock(ABC):
    """时钟"""

    @abstractmethod
    def now(self) -> datetime:
        """当前时间（带时区）"""


class SystemClock(Clock):
    """系统时钟"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """手动时钟（测试用）"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta = timedelta(0), **kwargs) -> datetime:
        """拨快时钟，kwargs 同 timedelta"""
        self._now = self._now + delta + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> datetime:
        self._now = value
        return self._now
