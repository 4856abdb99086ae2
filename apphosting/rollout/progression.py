# 应用托管发布控制器 - 推进引擎
"""根据阶段和已用时间计算此刻应生效的流量分配"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import Progression, RolloutStage
from .traffic import TrafficSet, interpolate, stage_target


# 指数推进在一个阶段内的翻倍次数：流量每 duration/4 翻一倍
EXPONENTIAL_DOUBLINGS = 4


@dataclass(frozen=True)
class StageProgress:
    """阶段推进结果"""
    split: TrafficSet
    complete: bool
    fraction: float
    end_time: Optional[datetime] = None


def progression_fraction(
    progression: Progression,
    elapsed: timedelta,
    duration: Optional[timedelta]
) -> float:
    """
    阶段完成度，取值 [0, 1]

    LINEAR 与时间成正比；EXPONENTIAL 为 (2^(k·x) - 1) / (2^k - 1)，
    单调不减、起点为0、仅在 x=1 时达到1。
    """
    if progression is Progression.IMMEDIATE:
        return 1.0
    if progression is Progression.PAUSE:
        return 0.0

    x = elapsed / duration
    x = min(max(x, 0.0), 1.0)
    if progression is Progression.LINEAR:
        return x

    k = EXPONENTIAL_DOUBLINGS
    return (2 ** (k * x) - 1) / (2 ** k - 1)


def progress(
    stage: RolloutStage,
    elapsed: timedelta,
    entry: TrafficSet,
    target_build: str,
    start_time: datetime,
    paused: timedelta = timedelta(0)
) -> StageProgress:
    """
    计算阶段当前应生效的分配

    Args:
        stage: 当前阶段
        elapsed: 阶段已用时间（不含暂停时间）
        entry: 进入阶段时的分配
        target_build: 本次发布的目标构建
        start_time: 阶段开始时间
        paused: 阶段内累计暂停时间

    Returns:
        StageProgress；完成时 end_time 为条件成立的时刻
    """
    if stage.progression is Progression.PAUSE:
        return StageProgress(split=entry, complete=False, fraction=0.0)

    goal = stage_target(entry, target_build, stage.target_percent)

    if stage.progression is Progression.IMMEDIATE:
        return StageProgress(split=goal, complete=True, fraction=1.0, end_time=start_time)

    fraction = progression_fraction(stage.progression, elapsed, stage.duration)
    if elapsed >= stage.duration:
        return StageProgress(
            split=goal,
            complete=True,
            fraction=1.0,
            end_time=start_time + paused + stage.duration
        )

    if not entry.splits:
        return StageProgress(split=goal, complete=False, fraction=fraction)
    return StageProgress(
        split=interpolate(entry, goal, fraction),
        complete=False,
        fraction=fraction
    )
