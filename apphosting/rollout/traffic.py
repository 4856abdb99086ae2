# 应用托管发布控制器 - 流量模型
"""流量分配、校验与插值"""

import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from apphosting.exceptions import InvalidSplit


@dataclass(frozen=True)
class TrafficSplit:
    """单个构建的流量占比"""
    build: str
    percent: int

    def to_dict(self) -> Dict[str, Any]:
        return {"build": self.build, "percent": self.percent}


@dataclass(frozen=True)
class TrafficSet:
    """
    有序的流量分配集合

    合法集合的百分比为非负整数、总和恰为100、每个构建至多出现一次。
    空集合仅用于表示尚未承载任何流量的后端。
    """
    splits: Tuple[TrafficSplit, ...] = ()

    @classmethod
    def of(cls, mapping: Union[Mapping[str, int], List[Tuple[str, int]]]) -> "TrafficSet":
        """由 {build: percent} 或 [(build, percent), ...] 构造"""
        items = mapping.items() if hasattr(mapping, "items") else mapping
        return cls(tuple(TrafficSplit(build, percent) for build, percent in items))

    @classmethod
    def single(cls, build: str) -> "TrafficSet":
        """全部流量指向一个构建"""
        return cls((TrafficSplit(build, 100),))

    def __iter__(self) -> Iterator[TrafficSplit]:
        return iter(self.splits)

    def __len__(self) -> int:
        return len(self.splits)

    def __contains__(self, build: object) -> bool:
        return any(split.build == build for split in self.splits)

    @property
    def builds(self) -> List[str]:
        return [split.build for split in self.splits]

    @property
    def total(self) -> int:
        return sum(split.percent for split in self.splits)

    def percent_of(self, build: str) -> int:
        """构建当前占比，不存在时为0"""
        return sum(split.percent for split in self.splits if split.build == build)

    def as_dict(self) -> Dict[str, int]:
        return {split.build: split.percent for split in self.splits}

    def normalized(self) -> "TrafficSet":
        """去掉占比为0的条目"""
        return TrafficSet(tuple(split for split in self.splits if split.percent != 0))

    def same_as(self, other: "TrafficSet") -> bool:
        """忽略顺序和0占比条目的等价比较"""
        return self.normalized().as_dict() == other.normalized().as_dict()

    def to_dict(self) -> Dict[str, Any]:
        return {"splits": [split.to_dict() for split in self.splits]}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrafficSet":
        if not data:
            return cls()
        return cls(tuple(
            TrafficSplit(item["build"], item["percent"])
            for item in data.get("splits", [])
        ))


def validate_split(traffic_set: TrafficSet) -> TrafficSet:
    """
    校验流量分配

    Raises:
        InvalidSplit: 为空、构建重复、占比为负或非整数、总和不为100
    """
    if not traffic_set.splits:
        raise InvalidSplit("流量分配为空")

    seen = set()
    for split in traffic_set:
        if not split.build:
            raise InvalidSplit("构建引用不能为空")
        if split.build in seen:
            raise InvalidSplit(f"构建 {split.build} 重复出现")
        seen.add(split.build)
        if isinstance(split.percent, bool) or not isinstance(split.percent, int):
            raise InvalidSplit(f"构建 {split.build} 的占比必须为整数: {split.percent!r}")
        if split.percent < 0:
            raise InvalidSplit(f"构建 {split.build} 的占比为负: {split.percent}")

    total = traffic_set.total
    if total != 100:
        raise InvalidSplit(f"流量占比总和为 {total}，应为 100")
    return traffic_set


def apportion(exact: Dict[str, Fraction], total: int = 100) -> Dict[str, int]:
    """
    最大余数法取整

    exact 的和必须恰为 total。余数相同时按构建名排序，保证结果确定。
    """
    floors = {build: math.floor(value) for build, value in exact.items()}
    shortfall = total - sum(floors.values())
    order = sorted(exact, key=lambda build: (-(exact[build] - floors[build]), build))
    for build in order[:shortfall]:
        floors[build] += 1
    return floors


def interpolate(start: TrafficSet, end: TrafficSet, fraction: float) -> TrafficSet:
    """
    在两个流量分配之间线性插值

    fraction=0 返回 start，fraction=1 返回 end；结果总和恒为100，0占比条目被去掉。
    start 为空（后端尚无流量）时直接返回 end。
    """
    if not 0 <= fraction <= 1:
        raise ValueError(f"插值系数必须在 [0, 1] 内: {fraction}")
    validate_split(end)
    if not start.splits:
        return end.normalized()
    validate_split(start)

    f = Fraction(fraction)
    builds = start.builds + [build for build in end.builds if build not in start]
    exact = {}
    for build in builds:
        a = start.percent_of(build)
        b = end.percent_of(build)
        exact[build] = a + (b - a) * f

    result = apportion(exact, 100)
    return TrafficSet.of([(build, result[build]) for build in builds if result[build] > 0])


def stage_target(entry: TrafficSet, build: str, percent: int) -> TrafficSet:
    """
    计算阶段目标分配

    目标构建取 max(percent, 当前占比)，剩余流量按其他构建在 entry 中的占比分配。
    """
    if not entry.splits:
        return TrafficSet.single(build)

    share = max(percent, entry.percent_of(build))
    others = {
        split.build: Fraction(split.percent)
        for split in entry
        if split.build != build and split.percent > 0
    }
    if share >= 100 or not others:
        return TrafficSet.single(build)

    rest = sum(others.values())
    exact = {}
    for split in entry:
        if split.build == build:
            exact[build] = Fraction(share)
        elif split.build in others:
            exact[split.build] = others[split.build] / rest * (100 - share)
    if build not in exact:
        exact[build] = Fraction(share)

    result = apportion(exact, 100)
    return TrafficSet.of([(name, value) for name, value in result.items() if value > 0])
