# 应用托管发布控制器 - 状态报告
"""发布状态快照与阶段历史（只读投影）"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional
import structlog

from .interfaces import Clock, SystemClock
from .machine import RolloutEvent, held_time
from .models import Progression, Rollout, RolloutState, Status, TIMED_PROGRESSIONS, format_duration
from .progression import progression_fraction
from .store import RolloutStore
from .traffic import TrafficSet

logger = structlog.get_logger()


@dataclass(frozen=True)
class StageHistoryEntry:
    """阶段历史条目"""
    index: int
    progression: Progression
    target_percent: Optional[int]
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    achieved: Optional[TrafficSet]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "progression": self.progression.value,
            "target_percent": self.target_percent,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "achieved": self.achieved.as_dict() if self.achieved is not None else None,
        }


@dataclass
class RolloutStatus:
    """发布状态快照"""
    rollout: str
    build: str
    state: RolloutState
    paused: bool
    stage_index: Optional[int]
    stage_count: int
    stage_progression: Optional[Progression]
    stage_elapsed: timedelta
    stage_remaining: Optional[timedelta]
    percent_complete: float
    build_percent: int
    current: TrafficSet
    error: Optional[Status] = None
    reconciling: bool = False
    history: List[StageHistoryEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollout": self.rollout,
            "build": self.build,
            "state": self.state.value,
            "paused": self.paused,
            "stage_index": self.stage_index,
            "stage_count": self.stage_count,
            "stage_progression": self.stage_progression.value if self.stage_progression else None,
            "stage_elapsed": format_duration(self.stage_elapsed),
            "stage_remaining": format_duration(self.stage_remaining),
            "percent_complete": self.percent_complete,
            "build_percent": self.build_percent,
            "current": self.current.as_dict(),
            "error": self.error.to_dict() if self.error else None,
            "reconciling": self.reconciling,
            "history": [entry.to_dict() for entry in self.history],
        }


def stage_history(rollout: Rollout) -> List[StageHistoryEntry]:
    """已开始阶段的线性历史"""
    return [
        StageHistoryEntry(
            index=index,
            progression=stage.progression,
            target_percent=stage.target_percent,
            start_time=stage.start_time,
            end_time=stage.end_time,
            achieved=stage.achieved,
        )
        for index, stage in enumerate(rollout.stages)
        if stage.started
    ]


def active_elapsed(rollout: Rollout, now: datetime) -> timedelta:
    """当前阶段已用时间，不含外部暂停时间"""
    stage = rollout.active_stage
    if stage is None or stage.start_time is None:
        return timedelta(0)
    end = stage.end_time or now
    elapsed = end - stage.start_time - rollout.stage_paused - held_time(rollout, now)
    return max(elapsed, timedelta(0))


def summarize(rollout: Rollout, current: TrafficSet, now: datetime) -> RolloutStatus:
    """
    计算发布状态快照

    percent_complete = (已完成阶段数 + 当前阶段完成度) / 阶段总数
    """
    stage = rollout.active_stage
    total = len(rollout.stages)
    completed = sum(1 for s in rollout.stages if s.completed)

    elapsed = active_elapsed(rollout, now)
    remaining = None
    fraction = 0.0
    if stage is not None and not stage.completed:
        if stage.progression in TIMED_PROGRESSIONS:
            remaining = max(stage.duration - elapsed, timedelta(0))
            fraction = progression_fraction(stage.progression, elapsed, stage.duration)
        elif stage.progression is Progression.IMMEDIATE:
            remaining = timedelta(0)

    if rollout.state is RolloutState.SUCCEEDED:
        percent_complete = 100.0
    elif total:
        percent_complete = round((completed + fraction) / total * 100, 1)
    else:
        percent_complete = 0.0

    return RolloutStatus(
        rollout=rollout.name,
        build=rollout.build,
        state=rollout.state,
        paused=rollout.paused,
        stage_index=rollout.stage_index if stage is not None else None,
        stage_count=total,
        stage_progression=stage.progression if stage is not None else None,
        stage_elapsed=elapsed,
        stage_remaining=remaining,
        percent_complete=percent_complete,
        build_percent=current.percent_of(rollout.build),
        current=current,
        error=rollout.error,
        reconciling=rollout.reconciling,
        history=stage_history(rollout),
    )


class StatusReporter:
    """
    状态报告器

    record 作为调度器事件回调，按发布保存最近的事件。
    """

    def __init__(
        self,
        store: RolloutStore,
        clock: Optional[Clock] = None,
        max_events: int = 1000
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._events: Dict[str, Deque[RolloutEvent]] = defaultdict(
            lambda: deque(maxlen=max_events)
        )

    def record(self, event: RolloutEvent):
        """记录事件"""
        self._events[event.rollout].append(event)
        logger.debug(
            "记录发布事件",
            rollout=event.rollout,
            kind=event.kind.value,
            state=event.state.value
        )

    def snapshot(self, backend: str, rollout_id: str) -> RolloutStatus:
        """
        获取状态快照

        Raises:
            RolloutNotFound: 发布不存在
        """
        rollout = self._store.get_rollout(backend, rollout_id)
        traffic = self._store.get_traffic(backend)
        return summarize(rollout, traffic.current, self._clock.now())

    def history(self, backend: str, rollout_id: str) -> List[StageHistoryEntry]:
        rollout = self._store.get_rollout(backend, rollout_id)
        return stage_history(rollout)

    def events(self, backend: str, rollout_id: str) -> List[RolloutEvent]:
        rollout = self._store.get_rollout(backend, rollout_id)
        return list(self._events.get(rollout.name, ()))
