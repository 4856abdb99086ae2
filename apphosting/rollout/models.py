# 应用托管发布控制器 - 领域模型
"""构建、发布、发布策略与流量资源"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from apphosting.exceptions import InvalidPolicy
from .traffic import TrafficSet


class BuildState(str, Enum):
    """构建状态"""
    BUILDING = "BUILDING"
    BUILD = "BUILD"
    DEPLOYING = "DEPLOYING"
    READY = "READY"
    FAILED = "FAILED"


class RolloutState(str, Enum):
    """发布状态"""
    QUEUED = "QUEUED"
    PENDING_BUILD = "PENDING_BUILD"
    PROGRESSING = "PROGRESSING"
    PAUSED = "PAUSED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RolloutState.SUCCEEDED,
    RolloutState.FAILED,
    RolloutState.CANCELLED,
})


class Progression(str, Enum):
    """阶段推进方式"""
    IMMEDIATE = "IMMEDIATE"
    LINEAR = "LINEAR"
    EXPONENTIAL = "EXPONENTIAL"
    PAUSE = "PAUSE"


TIMED_PROGRESSIONS = frozenset({Progression.LINEAR, Progression.EXPONENTIAL})


# ==================== 序列化工具 ====================

def format_duration(value: Optional[timedelta]) -> Optional[str]:
    """timedelta -> "600s" / "1.5s" """
    if value is None:
        return None
    seconds = value.total_seconds()
    if seconds == int(seconds):
        return f"{int(seconds)}s"
    return f"{seconds:.9f}".rstrip("0") + "s"


def parse_duration(value: Any) -> Optional[timedelta]:
    """
    解析时长

    支持 timedelta、秒数、"600s" 以及 {"seconds": 600, "nanos": 0}。
    """
    if value is None or isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"无法解析的时长: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, dict):
        return timedelta(
            seconds=int(value.get("seconds", 0)),
            microseconds=int(value.get("nanos", 0)) / 1000
        )
    if isinstance(value, str) and value.endswith("s"):
        try:
            return timedelta(seconds=float(value[:-1]))
        except ValueError:
            pass
    raise ValueError(f"无法解析的时长: {value!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ==================== 构建 ====================

@dataclass(frozen=True)
class Status:
    """错误载荷"""
    code: int
    message: str
    details: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": list(self.details)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Status"]:
        if not data:
            return None
        return cls(
            code=data.get("code", 0),
            message=data.get("message", ""),
            details=list(data.get("details", []))
        )


@dataclass(frozen=True)
class Build:
    """构建产物引用（只读）"""
    name: str
    state: BuildState = BuildState.BUILDING
    error: Optional[Status] = None
    image: str = ""
    source_ref: str = ""
    display_name: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    create_time: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.state is BuildState.READY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "error": self.error.to_dict() if self.error else None,
            "image": self.image,
            "source_ref": self.source_ref,
            "display_name": self.display_name,
            "labels": dict(self.labels),
            "create_time": _iso(self.create_time),
        }


# ==================== 发布阶段与策略 ====================

@dataclass
class RolloutStage:
    """
    发布阶段

    start_time / end_time / achieved 只由控制器写入。
    """
    progression: Progression
    duration: Optional[timedelta] = None
    target_percent: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    achieved: Optional[TrafficSet] = None

    @property
    def started(self) -> bool:
        return self.start_time is not None

    @property
    def completed(self) -> bool:
        return self.end_time is not None

    def template(self) -> "RolloutStage":
        """去掉运行时字段的副本"""
        return RolloutStage(
            progression=self.progression,
            duration=self.duration,
            target_percent=self.target_percent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "progression": self.progression.value,
            "duration": format_duration(self.duration),
            "target_percent": self.target_percent,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "achieved": self.achieved.to_dict() if self.achieved is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutStage":
        achieved = data.get("achieved")
        return cls(
            progression=Progression(data["progression"]),
            duration=parse_duration(data.get("duration")),
            target_percent=data.get("target_percent"),
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
            achieved=TrafficSet.from_dict(achieved) if achieved is not None else None,
        )


DEFAULT_STAGES = (
    RolloutStage(progression=Progression.IMMEDIATE, target_percent=100),
)


def default_stages() -> List[RolloutStage]:
    """未指定策略时：一次性切换全部流量"""
    return [stage.template() for stage in DEFAULT_STAGES]


def validate_stages(stages: List[RolloutStage]) -> List[RolloutStage]:
    """
    校验阶段序列

    Raises:
        InvalidPolicy: 阶段为空、推进方式缺失、时长缺失、目标占比非法或回退、
            最终未达到100%
    """
    if not stages:
        raise InvalidPolicy("发布策略至少需要一个阶段")

    last_percent = 0
    for index, stage in enumerate(stages):
        if not isinstance(stage.progression, Progression):
            raise InvalidPolicy(f"未知的推进方式: {stage.progression!r}", stage_index=index)

        if stage.progression is Progression.PAUSE:
            if stage.target_percent is not None:
                raise InvalidPolicy("暂停阶段不能设置目标占比", stage_index=index)
            continue

        if stage.progression in TIMED_PROGRESSIONS:
            if stage.duration is None or stage.duration <= timedelta(0):
                raise InvalidPolicy(
                    f"{stage.progression.value} 阶段必须设置正的时长",
                    stage_index=index
                )

        percent = stage.target_percent
        if percent is None:
            raise InvalidPolicy("缺少目标占比", stage_index=index)
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
            raise InvalidPolicy(f"目标占比必须是 0-100 的整数: {percent!r}", stage_index=index)
        if percent < last_percent:
            raise InvalidPolicy(
                f"目标占比不能回退 ({last_percent} -> {percent})",
                stage_index=index
            )
        last_percent = percent

    if last_percent != 100:
        raise InvalidPolicy(f"最终目标占比为 {last_percent}，发布必须以 100% 结束")
    return stages


@dataclass
class RolloutPolicy:
    """
    发布策略

    codebase_branch 与 codebase_tag_pattern 至多设置一个，用于自动触发。
    disabled 表示冻结在当前流量，disabled_time 由控制器写入。
    """
    stages: List[RolloutStage] = field(default_factory=list)
    codebase_branch: Optional[str] = None
    codebase_tag_pattern: Optional[str] = None
    disabled: bool = False
    disabled_time: Optional[datetime] = None

    def validate(self) -> "RolloutPolicy":
        """校验触发条件和阶段"""
        if self.codebase_branch and self.codebase_tag_pattern:
            raise InvalidPolicy("codebase_branch 与 codebase_tag_pattern 只能设置一个")
        if self.codebase_tag_pattern:
            try:
                re.compile(self.codebase_tag_pattern)
            except re.error as e:
                raise InvalidPolicy(f"标签模式不是合法的正则表达式: {e}")
        if not self.disabled or self.stages:
            validate_stages(self.stages)
        return self

    def matches(self, branch: Optional[str] = None, tag: Optional[str] = None) -> bool:
        """检查代码引用是否命中触发条件"""
        if self.codebase_branch:
            return branch == self.codebase_branch
        if self.codebase_tag_pattern and tag:
            return re.fullmatch(self.codebase_tag_pattern, tag) is not None
        return False

    def template_stages(self) -> List[RolloutStage]:
        return [stage.template() for stage in self.stages]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stages": [stage.to_dict() for stage in self.stages],
            "codebase_branch": self.codebase_branch,
            "codebase_tag_pattern": self.codebase_tag_pattern,
            "disabled": self.disabled,
            "disabled_time": _iso(self.disabled_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutPolicy":
        return cls(
            stages=[RolloutStage.from_dict(s) for s in data.get("stages", [])],
            codebase_branch=data.get("codebase_branch"),
            codebase_tag_pattern=data.get("codebase_tag_pattern"),
            disabled=data.get("disabled", False),
            disabled_time=_parse_time(data.get("disabled_time")),
        )


# ==================== 发布 ====================

@dataclass
class Rollout:
    """
    一次发布（聚合根）

    build 与 stages 创建后不可变；paused 及取消/恢复意图由调用方写入，
    其余字段只由状态机写入。
    """
    rollout_id: str
    backend: str
    build: str
    stages: List[RolloutStage] = field(default_factory=default_stages)
    state: RolloutState = RolloutState.QUEUED
    paused: bool = False
    pause_time: Optional[datetime] = None
    error: Optional[Status] = None
    display_name: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    uid: str = field(default_factory=lambda: str(uuid.uuid4()))
    etag: str = ""
    reconciling: bool = False

    # 控制器记账
    stage_index: int = -1
    stage_entry: TrafficSet = field(default_factory=TrafficSet)
    stage_paused: timedelta = timedelta(0)
    cancel_requested: bool = False
    resume_requested_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return f"backends/{self.backend}/rollouts/{self.rollout_id}"

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def active_stage(self) -> Optional[RolloutStage]:
        if 0 <= self.stage_index < len(self.stages):
            return self.stages[self.stage_index]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "rollout_id": self.rollout_id,
            "backend": self.backend,
            "build": self.build,
            "stages": [stage.to_dict() for stage in self.stages],
            "state": self.state.value,
            "paused": self.paused,
            "pause_time": _iso(self.pause_time),
            "error": self.error.to_dict() if self.error else None,
            "display_name": self.display_name,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "create_time": _iso(self.create_time),
            "update_time": _iso(self.update_time),
            "uid": self.uid,
            "etag": self.etag,
            "reconciling": self.reconciling,
            "stage_index": self.stage_index,
            "stage_entry": self.stage_entry.to_dict(),
            "stage_paused": format_duration(self.stage_paused),
            "cancel_requested": self.cancel_requested,
            "resume_requested_at": _iso(self.resume_requested_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rollout":
        return cls(
            rollout_id=data["rollout_id"],
            backend=data["backend"],
            build=data["build"],
            stages=[RolloutStage.from_dict(s) for s in data.get("stages", [])],
            state=RolloutState(data.get("state", RolloutState.QUEUED.value)),
            paused=data.get("paused", False),
            pause_time=_parse_time(data.get("pause_time")),
            error=Status.from_dict(data.get("error")),
            display_name=data.get("display_name", ""),
            labels=dict(data.get("labels", {})),
            annotations=dict(data.get("annotations", {})),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            uid=data.get("uid") or str(uuid.uuid4()),
            etag=data.get("etag", ""),
            reconciling=data.get("reconciling", False),
            stage_index=data.get("stage_index", -1),
            stage_entry=TrafficSet.from_dict(data.get("stage_entry")),
            stage_paused=parse_duration(data.get("stage_paused")) or timedelta(0),
            cancel_requested=data.get("cancel_requested", False),
            resume_requested_at=_parse_time(data.get("resume_requested_at")),
        )


# ==================== 流量资源 ====================

@dataclass(frozen=True)
class TargetTraffic:
    """手动模式：直接指定目标分配"""
    target: TrafficSet


@dataclass(frozen=True)
class PolicyTraffic:
    """策略模式：由发布策略驱动"""
    policy: RolloutPolicy


TrafficManagement = Union[TargetTraffic, PolicyTraffic]


def default_management() -> PolicyTraffic:
    """新后端的默认模式：单个 IMMEDIATE 100% 阶段的策略"""
    return PolicyTraffic(RolloutPolicy(stages=default_stages()))


@dataclass
class Traffic:
    """
    后端流量资源（每个后端一个）

    current 与线上实际生效的分配一致；management 二选一：手动目标或发布策略。
    """
    backend: str
    management: TrafficManagement = field(default_factory=default_management)
    current: TrafficSet = field(default_factory=TrafficSet)
    reconciling: bool = False
    annotations: Dict[str, str] = field(default_factory=dict)
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    uid: str = field(default_factory=lambda: str(uuid.uuid4()))
    etag: str = ""

    @property
    def name(self) -> str:
        return f"backends/{self.backend}/traffic"

    @property
    def target(self) -> Optional[TrafficSet]:
        if isinstance(self.management, TargetTraffic):
            return self.management.target
        return None

    @property
    def rollout_policy(self) -> Optional[RolloutPolicy]:
        if isinstance(self.management, PolicyTraffic):
            return self.management.policy
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "backend": self.backend,
            "current": self.current.to_dict(),
            "reconciling": self.reconciling,
            "annotations": dict(self.annotations),
            "create_time": _iso(self.create_time),
            "update_time": _iso(self.update_time),
            "uid": self.uid,
            "etag": self.etag,
        }
        if isinstance(self.management, TargetTraffic):
            data["target"] = self.management.target.to_dict()
        else:
            data["rollout_policy"] = self.management.policy.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Traffic":
        has_target = data.get("target") is not None
        has_policy = data.get("rollout_policy") is not None
        if has_target == has_policy:
            raise ValueError("target 与 rollout_policy 必须且只能设置一个")

        if has_target:
            management = TargetTraffic(TrafficSet.from_dict(data["target"]))
        else:
            management = PolicyTraffic(RolloutPolicy.from_dict(data["rollout_policy"]))

        return cls(
            backend=data["backend"],
            management=management,
            current=TrafficSet.from_dict(data.get("current")),
            reconciling=data.get("reconciling", False),
            annotations=dict(data.get("annotations", {})),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            uid=data.get("uid") or str(uuid.uuid4()),
            etag=data.get("etag", ""),
        )
