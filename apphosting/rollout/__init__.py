# 应用托管发布控制器 - 发布模块
"""流量模型、推进引擎、发布状态机、调度与状态报告"""

from .traffic import (
    TrafficSplit,
    TrafficSet,
    validate_split,
    interpolate,
    stage_target,
)
from .models import (
    Build,
    BuildState,
    Progression,
    Rollout,
    RolloutPolicy,
    RolloutStage,
    RolloutState,
    Status,
    Traffic,
    TargetTraffic,
    PolicyTraffic,
    default_stages,
    validate_stages,
)
from .progression import StageProgress, progress
from .machine import Action, AdvanceResult, EventKind, RolloutEvent, advance, held_time
from .interfaces import BuildLookup, TrafficBackend, Clock, SystemClock, ManualClock
from .memory import InMemoryBuildRegistry, InMemoryTrafficBackend
from .store import RolloutStore, JsonFileStore
from .scheduler import RolloutScheduler, DriveOutcome
from .status import StatusReporter, RolloutStatus, StageHistoryEntry

__all__ = [
    "TrafficSplit",
    "TrafficSet",
    "validate_split",
    "interpolate",
    "stage_target",
    "Build",
    "BuildState",
    "Progression",
    "Rollout",
    "RolloutPolicy",
    "RolloutStage",
    "RolloutState",
    "Status",
    "Traffic",
    "TargetTraffic",
    "PolicyTraffic",
    "default_stages",
    "validate_stages",
    "StageProgress",
    "progress",
    "Action",
    "AdvanceResult",
    "EventKind",
    "RolloutEvent",
    "advance",
    "held_time",
    "BuildLookup",
    "TrafficBackend",
    "Clock",
    "SystemClock",
    "ManualClock",
    "InMemoryBuildRegistry",
    "InMemoryTrafficBackend",
    "RolloutStore",
    "JsonFileStore",
    "RolloutScheduler",
    "DriveOutcome",
    "StatusReporter",
    "RolloutStatus",
    "StageHistoryEntry",
]
