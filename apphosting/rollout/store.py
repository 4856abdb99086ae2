# 应用托管发布控制器 - 状态存储
"""发布与流量记录的持久化（带 etag 乐观锁）"""

import copy
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import structlog

from apphosting.exceptions import EtagMismatch, RolloutConflict, RolloutNotFound
from .models import Rollout, Traffic

logger = structlog.get_logger()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _new_etag() -> str:
    return uuid.uuid4().hex[:16]


class RolloutStore:
    """
    内存状态存储

    读写都返回副本；写入时校验 etag，成功后分配新 etag。
    """

    def __init__(self):
        self._rollouts: Dict[Tuple[str, str], Rollout] = {}
        self._traffic: Dict[str, Traffic] = {}

    # ==================== 发布 ====================

    def get_rollout(self, backend: str, rollout_id: str) -> Rollout:
        rollout = self._rollouts.get((backend, rollout_id))
        if rollout is None:
            raise RolloutNotFound("发布", f"backends/{backend}/rollouts/{rollout_id}")
        return copy.deepcopy(rollout)

    def list_rollouts(self, backend: Optional[str] = None) -> List[Rollout]:
        """按创建时间排序列出发布"""
        rollouts = [
            r for (b, _), r in self._rollouts.items()
            if backend is None or b == backend
        ]
        rollouts.sort(key=lambda r: (r.create_time is None, r.create_time or _EPOCH, r.rollout_id))
        return [copy.deepcopy(r) for r in rollouts]

    def active_rollout(self, backend: str) -> Optional[Rollout]:
        """后端当前未结束的发布"""
        for rollout in self.list_rollouts(backend):
            if not rollout.is_terminal:
                return rollout
        return None

    def create_rollout(self, rollout: Rollout) -> Rollout:
        key = (rollout.backend, rollout.rollout_id)
        if key in self._rollouts:
            raise RolloutConflict(f"发布 {rollout.name} 已存在")
        stored = copy.deepcopy(rollout)
        stored.etag = _new_etag()
        self._rollouts[key] = stored
        self._persist()
        return copy.deepcopy(stored)

    def save_rollout(self, rollout: Rollout) -> Rollout:
        """
        保存发布

        Raises:
            RolloutNotFound: 记录不存在
            EtagMismatch: 记录已被他人修改
        """
        key = (rollout.backend, rollout.rollout_id)
        existing = self._rollouts.get(key)
        if existing is None:
            raise RolloutNotFound("发布", rollout.name)
        if existing.etag != rollout.etag:
            raise EtagMismatch(rollout.name, rollout.etag, existing.etag)
        stored = copy.deepcopy(rollout)
        stored.etag = _new_etag()
        self._rollouts[key] = stored
        self._persist()
        return copy.deepcopy(stored)

    # ==================== 流量 ====================

    def get_traffic(self, backend: str) -> Traffic:
        traffic = self._traffic.get(backend)
        if traffic is None:
            raise RolloutNotFound("流量配置", f"backends/{backend}/traffic")
        return copy.deepcopy(traffic)

    def get_or_create_traffic(self, backend: str, now: Optional[datetime] = None) -> Traffic:
        """不存在时以默认策略模式创建"""
        if backend not in self._traffic:
            traffic = Traffic(backend=backend, create_time=now, update_time=now)
            traffic.etag = _new_etag()
            self._traffic[backend] = traffic
            self._persist()
            logger.info("创建流量配置", backend=backend)
        return copy.deepcopy(self._traffic[backend])

    def save_traffic(self, traffic: Traffic) -> Traffic:
        """
        保存流量配置

        Raises:
            EtagMismatch: 记录已被他人修改
        """
        existing = self._traffic.get(traffic.backend)
        if existing is not None and existing.etag != traffic.etag:
            raise EtagMismatch(traffic.name, traffic.etag, existing.etag)
        stored = copy.deepcopy(traffic)
        stored.etag = _new_etag()
        self._traffic[traffic.backend] = stored
        self._persist()
        return copy.deepcopy(stored)

    def list_traffic(self) -> List[Traffic]:
        return [copy.deepcopy(t) for t in self._traffic.values()]

    def _persist(self):
        """写入后的持久化钩子"""


class JsonFileStore(RolloutStore):
    """JSON 文件状态存储，每次写入后整体落盘"""

    def __init__(self, state_file: str = "rollout_state.json"):
        super().__init__()
        self.state_file = Path(state_file)
        self._load()

    def _load(self):
        """加载状态"""
        if not self.state_file.exists():
            return
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("加载发布状态失败", path=str(self.state_file), error=str(e))
            raise

        for item in data.get("rollouts", []):
            rollout = Rollout.from_dict(item)
            self._rollouts[(rollout.backend, rollout.rollout_id)] = rollout
        for item in data.get("traffic", []):
            traffic = Traffic.from_dict(item)
            self._traffic[traffic.backend] = traffic

        logger.info(
            "加载发布状态",
            path=str(self.state_file),
            rollouts=len(self._rollouts),
            backends=len(self._traffic)
        )

    def _persist(self):
        """保存状态"""
        data = {
            "rollouts": [r.to_dict() for r in self._rollouts.values()],
            "traffic": [t.to_dict() for t in self._traffic.values()],
        }
        tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            tmp_file.replace(self.state_file)
        except OSError as e:
            logger.error("保存发布状态失败", path=str(self.state_file), error=str(e))
            raise
