from .schemas import (
    ResponseBase,
    RolloutStageCreate,
    RolloutCreate,
    TrafficSplitIn,
    RolloutPolicyIn,
    TrafficUpdate,
    BuildUpsert,
)

__all__ = [
    "ResponseBase",
    "RolloutStageCreate",
    "RolloutCreate",
    "TrafficSplitIn",
    "RolloutPolicyIn",
    "TrafficUpdate",
    "BuildUpsert",
]
