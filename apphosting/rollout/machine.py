# 应用托管发布控制器 - 发布状态机
"""
由纯决策函数 advance 驱动的发布状态机

advance 不做任何 I/O、不修改入参，只根据持久化的发布记录、构建状态、
当前线上分配和时间给出决策；下发与持久化由调度器负责。
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from apphosting.exceptions import BuildFailed, BuildNotReady
from .models import Build, BuildState, Progression, Rollout, RolloutState, TIMED_PROGRESSIONS
from .progression import progress
from .traffic import TrafficSet


class Action(str, Enum):
    """决策类型"""
    NO_CHANGE = "no_change"
    APPLY = "apply"
    TERMINAL = "terminal"


class EventKind(str, Enum):
    """状态机事件"""
    STATE_CHANGED = "state_changed"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"


@dataclass(frozen=True)
class RolloutEvent:
    """状态机事件"""
    kind: EventKind
    rollout: str
    time: datetime
    state: RolloutState
    stage_index: Optional[int] = None
    split: Optional[TrafficSet] = None
    message: str = ""

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "rollout": self.rollout,
            "time": self.time.isoformat(),
            "state": self.state.value,
            "stage_index": self.stage_index,
            "split": self.split.as_dict() if self.split is not None else None,
            "message": self.message,
        }


@dataclass
class AdvanceResult:
    """
    advance 的决策

    Attributes:
        action: NO_CHANGE / APPLY / TERMINAL
        rollout: 建议的下一版发布记录（下发成功后才可持久化）
        split: APPLY 时需要下发的完整分配
        changed: 发布记录是否有变化
        events: 本次推进产生的事件
    """
    action: Action
    rollout: Rollout
    split: Optional[TrafficSet] = None
    changed: bool = False
    events: List[RolloutEvent] = field(default_factory=list)

    @property
    def outcome(self) -> Optional[RolloutState]:
        return self.rollout.state if self.rollout.is_terminal else None


class _Step:
    """一次推进过程中的可变草稿"""

    def __init__(self, rollout: Rollout, now: datetime):
        self.rollout = copy.deepcopy(rollout)
        self.now = now
        self.events: List[RolloutEvent] = []
        self.desired: Optional[TrafficSet] = None

    def emit(self, kind: EventKind, time: Optional[datetime] = None, **kwargs):
        stage_index = self.rollout.stage_index if self.rollout.stage_index >= 0 else None
        kwargs.setdefault("stage_index", stage_index)
        self.events.append(RolloutEvent(
            kind=kind,
            rollout=self.rollout.name,
            time=time or self.now,
            state=self.rollout.state,
            **kwargs
        ))

    def transition(self, state: RolloutState, message: str = ""):
        if self.rollout.state is state:
            return
        self.rollout.state = state
        self.emit(EventKind.STATE_CHANGED, message=message)

    def fail(self, error, message: str):
        self.rollout.error = error.to_status()
        self.transition(RolloutState.FAILED, message)

    def start_stage(self, index: int, start_time: datetime, entry: TrafficSet):
        self.rollout.stage_index = index
        self.rollout.stage_entry = entry
        self.rollout.stage_paused = timedelta(0)
        self.rollout.stages[index].start_time = start_time
        self.emit(EventKind.STAGE_STARTED, time=start_time, split=entry)


def held_time(rollout: Rollout, now: datetime) -> timedelta:
    """
    当前外部暂停实际挡住阶段推进的时长

    定时阶段以自然结束时刻为上限；暂停阶段从恢复请求时刻起算。
    """
    stage = rollout.active_stage
    if not rollout.paused or rollout.pause_time is None:
        return timedelta(0)
    if stage is None or stage.start_time is None or stage.completed:
        return timedelta(0)
    since = max(rollout.pause_time, stage.start_time)
    until = now
    if stage.progression is Progression.PAUSE:
        if rollout.resume_requested_at is not None:
            since = max(since, rollout.resume_requested_at)
    elif stage.progression in TIMED_PROGRESSIONS and stage.duration is not None:
        until = min(now, stage.start_time + rollout.stage_paused + stage.duration)
    return max(until - since, timedelta(0))


def advance(
    rollout: Rollout,
    build: Optional[Build],
    current: TrafficSet,
    now: datetime,
    build_ready_timeout: Optional[timedelta] = None
) -> AdvanceResult:
    """
    推进一次发布

    对相同的输入总是给出相同的决策，可在崩溃恢复后安全重放。

    Args:
        rollout: 持久化的发布记录
        build: 目标构建（查询不到时为 None）
        current: 后端当前生效的分配
        now: 当前时间
        build_ready_timeout: 等待构建就绪的超时

    Returns:
        AdvanceResult
    """
    if rollout.is_terminal:
        return AdvanceResult(action=Action.TERMINAL, rollout=rollout)

    step = _Step(rollout, now)
    draft = step.rollout

    if draft.cancel_requested:
        step.transition(RolloutState.CANCELLED, "发布已取消")
        return _finish(rollout, step, current)

    if build is not None and build.state is BuildState.FAILED:
        step.fail(BuildFailed(build.name, build.error), "目标构建失败")
        return _finish(rollout, step, current)

    if draft.state is RolloutState.QUEUED:
        step.transition(RolloutState.PENDING_BUILD, "等待构建就绪")

    if draft.stage_index < 0:
        if build is None or build.state is not BuildState.READY:
            if (
                build_ready_timeout is not None
                and draft.create_time is not None
                and now - draft.create_time >= build_ready_timeout
            ):
                step.fail(
                    BuildNotReady(f"构建 {draft.build} 在 {build_ready_timeout} 内未就绪"),
                    "等待构建超时"
                )
            return _finish(rollout, step, current)
        if draft.paused:
            return _finish(rollout, step, current)
        step.start_stage(0, now, current)
        step.transition(RolloutState.PROGRESSING, "开始推进")

    if draft.paused:
        step.transition(RolloutState.PAUSED, "外部暂停")
        return _finish(rollout, step, current)

    _run_stages(step)
    return _finish(rollout, step, current)


def _run_stages(step: _Step):
    """从当前阶段开始推进，直到遇到未完成的阶段或全部完成"""
    draft = step.rollout
    now = step.now

    while True:
        stage = draft.stages[draft.stage_index]

        if stage.progression is Progression.PAUSE:
            step.desired = draft.stage_entry
            if draft.resume_requested_at is None:
                step.transition(RolloutState.PAUSED, "进入暂停阶段")
                return
            end_time = max(draft.resume_requested_at, stage.start_time)
            achieved = draft.stage_entry
            draft.resume_requested_at = None
        else:
            step.transition(RolloutState.PROGRESSING)
            elapsed = now - stage.start_time - draft.stage_paused
            result = progress(
                stage,
                elapsed,
                draft.stage_entry,
                draft.build,
                stage.start_time,
                draft.stage_paused
            )
            step.desired = result.split
            if not result.complete:
                return
            end_time = result.end_time
            achieved = result.split

        stage.end_time = end_time
        stage.achieved = achieved
        step.emit(EventKind.STAGE_COMPLETED, time=end_time, split=achieved)

        if draft.stage_index + 1 >= len(draft.stages):
            step.desired = achieved
            step.transition(RolloutState.SUCCEEDED, "发布完成")
            return

        step.start_stage(draft.stage_index + 1, end_time, achieved)


def _finish(original: Rollout, step: _Step, current: TrafficSet) -> AdvanceResult:
    draft = step.rollout
    changed = draft != original
    if changed:
        draft.update_time = step.now

    desired = step.desired
    if desired is not None and not desired.same_as(current):
        action = Action.APPLY
        split = desired
    else:
        action = Action.TERMINAL if draft.is_terminal else Action.NO_CHANGE
        split = None

    return AdvanceResult(
        action=action,
        rollout=draft,
        split=split,
        changed=changed,
        events=step.events
    )
