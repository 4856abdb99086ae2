"""
应用托管发布控制器 - Pydantic 模式

创建输入与读模型分离：这里只暴露调用方可写的字段，
状态、时间戳、etag 等只读字段一律拒绝。
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from apphosting.exceptions.exceptions import RPC_FAILED_PRECONDITION
from apphosting.rollout.models import (
    Build,
    BuildState,
    Progression,
    RolloutPolicy,
    RolloutStage,
    Status,
    parse_duration,
)
from apphosting.rollout.traffic import TrafficSet


# ==================== 通用响应 ====================

class ResponseBase(BaseModel):
    """统一响应基类"""
    code: int = 0
    message: str = "success"
    data: Optional[Any] = None


# ==================== 发布相关 ====================

class RolloutStageCreate(BaseModel):
    """发布阶段输入"""
    model_config = ConfigDict(extra="forbid")

    progression: Progression
    duration: Optional[timedelta] = Field(None, description="时长，如 \"600s\" 或 {seconds, nanos}")
    target_percent: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("duration", mode="before")
    @classmethod
    def decode_duration(cls, value: Any) -> Any:
        """兼容 proto JSON 时长"""
        if isinstance(value, dict) or (isinstance(value, str) and value.endswith("s")):
            return parse_duration(value)
        return value

    def to_stage(self) -> RolloutStage:
        return RolloutStage(
            progression=self.progression,
            duration=self.duration,
            target_percent=self.target_percent,
        )


class RolloutCreate(BaseModel):
    """发布创建输入"""
    model_config = ConfigDict(extra="forbid")

    build: str = Field(..., min_length=1, description="目标构建")
    rollout_id: Optional[str] = Field(None, pattern=r"^[a-z0-9][a-z0-9-]{0,62}$")
    display_name: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    stages: Optional[List[RolloutStageCreate]] = Field(None, description="缺省时使用后端发布策略")

    def to_stages(self) -> Optional[List[RolloutStage]]:
        if self.stages is None:
            return None
        return [stage.to_stage() for stage in self.stages]


# ==================== 流量相关 ====================

class TrafficSplitIn(BaseModel):
    """流量分配条目"""
    model_config = ConfigDict(extra="forbid")

    build: str = Field(..., min_length=1)
    percent: int = Field(..., ge=0, le=100)


class RolloutPolicyIn(BaseModel):
    """发布策略输入"""
    model_config = ConfigDict(extra="forbid")

    codebase_branch: Optional[str] = None
    codebase_tag_pattern: Optional[str] = None
    stages: List[RolloutStageCreate] = Field(default_factory=list)
    disabled: bool = False

    @model_validator(mode="after")
    def check_trigger(self) -> "RolloutPolicyIn":
        if self.codebase_branch and self.codebase_tag_pattern:
            raise ValueError("codebase_branch 与 codebase_tag_pattern 只能设置一个")
        return self

    def to_policy(self) -> RolloutPolicy:
        return RolloutPolicy(
            stages=[stage.to_stage() for stage in self.stages],
            codebase_branch=self.codebase_branch,
            codebase_tag_pattern=self.codebase_tag_pattern,
            disabled=self.disabled,
        )


class TrafficUpdate(BaseModel):
    """流量更新：target 与 rollout_policy 必须且只能设置一个"""
    model_config = ConfigDict(extra="forbid")

    target: Optional[List[TrafficSplitIn]] = None
    rollout_policy: Optional[RolloutPolicyIn] = None

    @model_validator(mode="after")
    def check_mode(self) -> "TrafficUpdate":
        if (self.target is None) == (self.rollout_policy is None):
            raise ValueError("target 与 rollout_policy 必须且只能设置一个")
        return self

    def target_set(self) -> Optional[TrafficSet]:
        if self.target is None:
            return None
        return TrafficSet.of([(split.build, split.percent) for split in self.target])


# ==================== 构建相关 ====================

class BuildUpsert(BaseModel):
    """构建登记输入（由构建流水线上报）"""
    model_config = ConfigDict(extra="forbid")

    state: BuildState = BuildState.READY
    image: str = ""
    source_ref: str = ""
    display_name: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = Field(None, description="仅 FAILED 时可设置")

    @model_validator(mode="after")
    def check_error(self) -> "BuildUpsert":
        if self.error_message and self.state is not BuildState.FAILED:
            raise ValueError("error_message 只能与 FAILED 状态一起设置")
        return self

    def to_build(self, name: str, create_time: Optional[datetime] = None) -> Build:
        error = None
        if self.state is BuildState.FAILED:
            error = Status(code=RPC_FAILED_PRECONDITION, message=self.error_message or "构建失败")
        return Build(
            name=name,
            state=self.state,
            error=error,
            image=self.image,
            source_ref=self.source_ref,
            display_name=self.display_name,
            labels=dict(self.labels),
            create_time=create_time,
        )
