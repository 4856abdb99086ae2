# 应用托管发布控制器 - 发布调度器
"""准入控制、周期推进、下发重试与取消/暂停"""

import asyncio
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional
import structlog

from apphosting.exceptions import (
    EtagMismatch,
    InvalidPolicy,
    InvalidSplit,
    RolloutConflict,
    RolloutException,
    RolloutNotFound,
    TransportError,
)
from .interfaces import BuildLookup, Clock, SystemClock, TrafficBackend
from .machine import Action, AdvanceResult, EventKind, RolloutEvent, advance, held_time
from .models import (
    Progression,
    Rollout,
    RolloutPolicy,
    RolloutState,
    PolicyTraffic,
    TargetTraffic,
    Traffic,
    default_stages,
    validate_stages,
)
from .store import RolloutStore
from .traffic import TrafficSet, validate_split

if TYPE_CHECKING:
    from apphosting.core.config import Settings
    from apphosting.schemas import RolloutCreate

logger = structlog.get_logger()


@dataclass
class DriveOutcome:
    """一次推进的结果"""
    rollout: Optional[Rollout]
    action: Action
    split: Optional[TrafficSet] = None
    error: Optional[RolloutException] = None


@dataclass
class _RetryState:
    """下发重试记账"""
    failures: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[RolloutException] = None


class RolloutScheduler:
    """
    发布调度器

    每个后端同一时刻至多一个未结束的发布；tick() 对所有跟踪中的发布调用一次
    advance，先下发、确认成功后再持久化。
    """

    def __init__(
        self,
        store: RolloutStore,
        builds: BuildLookup,
        traffic_backend: TrafficBackend,
        clock: Optional[Clock] = None,
        max_apply_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        build_ready_timeout: Optional[float] = None,
        tick_interval: float = 10.0,
    ):
        self._store = store
        self._builds = builds
        self._traffic = traffic_backend
        self._clock = clock or SystemClock()
        self._max_apply_attempts = max_apply_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._build_ready_timeout = (
            timedelta(seconds=build_ready_timeout) if build_ready_timeout else None
        )
        self._tick_interval = tick_interval

        # backend -> rollout_id
        self._tracked: Dict[str, str] = {}
        self._retries: Dict[str, _RetryState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._admission_lock = asyncio.Lock()
        self._listeners: List[Callable] = []

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        store: RolloutStore,
        builds: BuildLookup,
        traffic_backend: TrafficBackend,
        clock: Optional[Clock] = None,
    ) -> "RolloutScheduler":
        return cls(
            store,
            builds,
            traffic_backend,
            clock=clock,
            max_apply_attempts=settings.ROLLOUT_MAX_APPLY_ATTEMPTS,
            retry_base_delay=settings.ROLLOUT_RETRY_BASE_DELAY,
            retry_max_delay=settings.ROLLOUT_RETRY_MAX_DELAY,
            build_ready_timeout=settings.BUILD_READY_TIMEOUT,
            tick_interval=settings.ROLLOUT_TICK_INTERVAL,
        )

    @property
    def store(self) -> RolloutStore:
        return self._store

    @property
    def builds(self) -> BuildLookup:
        return self._builds

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def tracked(self) -> Dict[str, str]:
        return dict(self._tracked)

    def on_event(self, callback: Callable):
        """注册事件回调"""
        self._listeners.append(callback)

    # ==================== 准入 ====================

    async def submit(self, backend: str, request: "RolloutCreate") -> Rollout:
        """
        提交发布

        Raises:
            InvalidPolicy: 策略不合法或后端策略已停用
            RolloutConflict: 后端已有未结束的发布
        """
        async with self._admission_lock:
            now = self._clock.now()
            traffic = self._store.get_or_create_traffic(backend, now)
            policy = traffic.rollout_policy
            if policy is not None and policy.disabled:
                raise InvalidPolicy(f"后端 {backend} 的发布策略已停用")

            stages = request.to_stages()
            if stages is None:
                stages = policy.template_stages() if policy is not None else default_stages()
            validate_stages(stages)

            active = self._store.active_rollout(backend)
            if active is not None:
                raise RolloutConflict(
                    f"后端 {backend} 已有进行中的发布 {active.rollout_id} ({active.state.value})"
                )

            rollout = Rollout(
                rollout_id=request.rollout_id or f"rollout-{uuid.uuid4().hex[:8]}",
                backend=backend,
                build=request.build,
                stages=stages,
                display_name=request.display_name,
                labels=dict(request.labels),
                annotations=dict(request.annotations),
                create_time=now,
                update_time=now,
            )
            rollout = self._store.create_rollout(rollout)
            self._tracked[backend] = rollout.rollout_id

        logger.info(
            "提交发布",
            rollout=rollout.name,
            build=rollout.build,
            stages=[stage.progression.value for stage in rollout.stages]
        )
        return rollout

    async def trigger(
        self,
        backend: str,
        build: str,
        branch: Optional[str] = None,
        tag: Optional[str] = None
    ) -> Optional[Rollout]:
        """按后端发布策略的触发条件自动提交发布"""
        from apphosting.schemas import RolloutCreate

        traffic = self._store.get_or_create_traffic(backend, self._clock.now())
        policy = traffic.rollout_policy
        if policy is None or policy.disabled or not policy.matches(branch=branch, tag=tag):
            logger.debug("未命中触发条件", backend=backend, branch=branch, tag=tag)
            return None
        return await self.submit(backend, RolloutCreate(build=build))

    # ==================== 外部信号 ====================

    async def cancel(self, backend: str, rollout_id: str) -> Rollout:
        """请求取消，下一次推进时生效"""
        rollout = self._require_active(backend, rollout_id)
        if rollout.cancel_requested:
            return rollout
        rollout.cancel_requested = True
        rollout.update_time = self._clock.now()
        rollout = self._store.save_rollout(rollout)
        self._tracked.setdefault(backend, rollout_id)
        logger.info("请求取消发布", rollout=rollout.name)
        return rollout

    async def pause(self, backend: str, rollout_id: str) -> Rollout:
        """外部暂停：保持当前流量，暂停时间不计入阶段耗时"""
        rollout = self._require_active(backend, rollout_id)
        if rollout.paused:
            return rollout
        now = self._clock.now()
        rollout.paused = True
        rollout.pause_time = now
        rollout.update_time = now
        rollout = self._store.save_rollout(rollout)
        logger.info("暂停发布", rollout=rollout.name)
        return rollout

    async def resume(self, backend: str, rollout_id: str) -> Rollout:
        """
        恢复发布

        先解除外部暂停；没有外部暂停时结束当前的暂停阶段。
        """
        rollout = self._require_active(backend, rollout_id)
        now = self._clock.now()
        stage = rollout.active_stage

        if rollout.paused:
            held = held_time(rollout, now)
            if stage is not None and stage.progression is Progression.PAUSE:
                # 暂停阶段按 resume_requested_at 结束，外部暂停期间顺延
                if rollout.resume_requested_at is not None:
                    rollout.resume_requested_at += held
            else:
                rollout.stage_paused += held
            rollout.paused = False
            rollout.pause_time = None
            message = "解除外部暂停"
        elif (
            stage is not None
            and stage.progression is Progression.PAUSE
            and not stage.completed
            and rollout.resume_requested_at is None
        ):
            rollout.resume_requested_at = now
            message = "结束暂停阶段"
        else:
            logger.info("发布无需恢复", rollout=rollout.name, state=rollout.state.value)
            return rollout

        rollout.update_time = now
        rollout = self._store.save_rollout(rollout)
        logger.info(message, rollout=rollout.name)
        return rollout

    # ==================== 流量配置 ====================

    async def set_target(self, backend: str, traffic_set: TrafficSet) -> Traffic:
        """
        手动模式：立即下发指定分配

        Raises:
            RolloutConflict: 后端有进行中的发布
            InvalidSplit: 分配不合法
            TransportError: 下发失败
        """
        validate_split(traffic_set)
        async with self._lock_for(backend):
            active = self._store.active_rollout(backend)
            if active is not None:
                raise RolloutConflict(f"后端 {backend} 有进行中的发布 {active.rollout_id}")

            traffic = self._store.get_or_create_traffic(backend, self._clock.now())
            try:
                await self._traffic.apply_traffic(backend, traffic_set)
            except TransportError:
                raise
            except Exception as e:
                raise TransportError(f"流量下发失败: {e}") from e

            traffic.current = traffic_set
            traffic.management = TargetTraffic(traffic_set)
            traffic.update_time = self._clock.now()
            traffic = self._store.save_traffic(traffic)

        logger.info("手动设置流量", backend=backend, splits=traffic_set.as_dict())
        return traffic

    async def set_policy(self, backend: str, policy: RolloutPolicy) -> Traffic:
        """策略模式：保存发布策略"""
        policy.validate()
        now = self._clock.now()
        if policy.disabled and policy.disabled_time is None:
            policy.disabled_time = now
        if not policy.disabled:
            policy.disabled_time = None

        async with self._lock_for(backend):
            traffic = self._store.get_or_create_traffic(backend, now)
            traffic.management = PolicyTraffic(policy)
            traffic.update_time = now
            traffic = self._store.save_traffic(traffic)

        logger.info("设置发布策略", backend=backend, disabled=policy.disabled)
        return traffic

    # ==================== 推进 ====================

    async def tick(self) -> List[DriveOutcome]:
        """推进所有跟踪中的发布一次"""
        targets = list(self._tracked.items())
        if not targets:
            return []
        outcomes = await asyncio.gather(
            *(self._drive(backend, rollout_id) for backend, rollout_id in targets)
        )
        return list(outcomes)

    async def recover(self) -> int:
        """
        崩溃恢复

        重新跟踪未结束的发布；对仍处于下发中的后端重新下发持久化的 current。
        """
        count = 0
        for rollout in self._store.list_rollouts():
            if rollout.is_terminal:
                continue
            self._tracked[rollout.backend] = rollout.rollout_id
            if rollout.reconciling:
                self._clear_reconciling(rollout.backend, rollout.rollout_id)
            count += 1

        for traffic in self._store.list_traffic():
            if not traffic.reconciling:
                continue
            async with self._lock_for(traffic.backend):
                if traffic.current.splits:
                    try:
                        await self._traffic.apply_traffic(traffic.backend, traffic.current)
                    except Exception as e:
                        logger.error("重新下发流量失败", backend=traffic.backend, error=str(e))
                        continue
                traffic.reconciling = False
                self._store.save_traffic(traffic)
            logger.warning("重新下发未确认的流量", backend=traffic.backend)

        logger.info("恢复发布跟踪", count=count)
        return count

    async def start(self):
        """启动调度循环"""
        if self._running:
            return
        await self.recover()
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("发布调度器已启动", interval=self._tick_interval)

    async def stop(self):
        """停止调度循环"""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("发布调度器已停止")

    async def _run_loop(self):
        """调度循环"""
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("调度循环异常", error=str(e), exc_info=True)
            await asyncio.sleep(self._tick_interval)

    async def _drive(self, backend: str, rollout_id: str) -> DriveOutcome:
        async with self._lock_for(backend):
            with structlog.contextvars.bound_contextvars(backend=backend, rollout_id=rollout_id):
                try:
                    return await self._drive_locked(backend, rollout_id)
                except RolloutNotFound as e:
                    logger.warning("跟踪的发布不存在，停止跟踪", error=e.message)
                    if self._tracked.get(backend) == rollout_id:
                        del self._tracked[backend]
                    return DriveOutcome(rollout=None, action=Action.TERMINAL, error=e)
                except Exception as e:
                    logger.error("推进发布异常", error=str(e), exc_info=True)
                    error = e if isinstance(e, RolloutException) else RolloutException(str(e))
                    return DriveOutcome(rollout=None, action=Action.NO_CHANGE, error=error)

    async def _drive_locked(self, backend: str, rollout_id: str) -> DriveOutcome:
        rollout = self._store.get_rollout(backend, rollout_id)
        if rollout.is_terminal:
            self._untrack(rollout)
            return DriveOutcome(rollout=rollout, action=Action.TERMINAL)

        now = self._clock.now()
        retry = self._retries.get(rollout.name)
        if retry and retry.next_attempt_at and now < retry.next_attempt_at and not rollout.cancel_requested:
            return DriveOutcome(rollout=rollout, action=Action.NO_CHANGE, error=retry.last_error)

        try:
            build = await self._builds.get_build(rollout.build)
        except RolloutNotFound:
            build = None
        except Exception as e:
            error = e if isinstance(e, RolloutException) else TransportError(f"查询构建失败: {e}")
            return await self._record_failure(rollout, error, operation="查询构建")

        traffic = self._store.get_or_create_traffic(backend, now)
        result = advance(rollout, build, traffic.current, now, self._build_ready_timeout)

        if result.action is Action.APPLY:
            return await self._apply(rollout, traffic, result)

        if not result.changed:
            return DriveOutcome(rollout=rollout, action=result.action)

        try:
            saved = self._store.save_rollout(result.rollout)
        except EtagMismatch as e:
            logger.info("发布记录已变更，下次重新推进", error=e.message)
            return DriveOutcome(rollout=rollout, action=Action.NO_CHANGE)

        await self._emit(result.events)
        if saved.is_terminal:
            self._untrack(saved)
            self._log_terminal(saved)
        return DriveOutcome(rollout=saved, action=result.action)

    async def _apply(self, rollout: Rollout, traffic: Traffic, result: AdvanceResult) -> DriveOutcome:
        """先下发、确认成功后再持久化"""
        split = result.split
        try:
            validate_split(split)
        except InvalidSplit as e:
            return await self._fail(rollout, e)

        try:
            held = self._store.save_rollout(replace(rollout, reconciling=True))
        except EtagMismatch as e:
            # 查询构建期间收到暂停/取消，本次不下发
            logger.info("发布记录已变更，跳过本次下发", error=e.message)
            return DriveOutcome(rollout=rollout, action=Action.NO_CHANGE)
        traffic = self._store.save_traffic(replace(traffic, reconciling=True))

        try:
            await self._traffic.apply_traffic(rollout.backend, split)
        except Exception as e:
            error = e if isinstance(e, TransportError) else TransportError(f"流量下发失败: {e}")
            self._store.save_traffic(replace(traffic, reconciling=False))
            held = self._clear_reconciling(rollout.backend, rollout.rollout_id)
            return await self._record_failure(held, error, operation="流量下发")

        now = self._clock.now()
        self._store.save_traffic(replace(traffic, current=split, reconciling=False, update_time=now))
        self._retries.pop(rollout.name, None)

        proposal = replace(result.rollout, etag=held.etag, reconciling=False)
        try:
            saved = self._store.save_rollout(proposal)
        except EtagMismatch:
            # 下发期间被暂停/取消：流量已生效，推进结果丢弃，下次重新推导
            logger.info("下发期间发布记录已变更，丢弃推进结果", splits=split.as_dict())
            fresh = self._clear_reconciling(rollout.backend, rollout.rollout_id)
            return DriveOutcome(rollout=fresh, action=Action.NO_CHANGE, split=split)

        logger.info(
            "流量已下发",
            splits=split.as_dict(),
            state=saved.state.value,
            stage_index=saved.stage_index
        )
        await self._emit(result.events)
        if saved.is_terminal:
            self._untrack(saved)
            self._log_terminal(saved)
        return DriveOutcome(rollout=saved, action=Action.APPLY, split=split)

    async def _record_failure(
        self,
        rollout: Rollout,
        error: RolloutException,
        operation: str = "流量下发"
    ) -> DriveOutcome:
        """记录一次失败；连续失败达到上限时发布失败，错误消息按最后一次失败的操作命名"""
        retry = self._retries.setdefault(rollout.name, _RetryState())
        retry.failures += 1
        retry.last_error = error

        if retry.failures >= self._max_apply_attempts:
            exhausted = TransportError(
                f"{operation}连续失败 {retry.failures} 次: {error.message}",
                attempts=retry.failures
            )
            return await self._fail(rollout, exhausted)

        delay = min(
            self._retry_base_delay * (2 ** (retry.failures - 1)),
            self._retry_max_delay
        )
        retry.next_attempt_at = self._clock.now() + timedelta(seconds=delay)
        logger.warning(
            "推进失败，等待重试",
            operation=operation,
            attempt=retry.failures,
            max_attempts=self._max_apply_attempts,
            delay=delay,
            error=error.message
        )
        return DriveOutcome(rollout=rollout, action=Action.NO_CHANGE, error=error)

    async def _fail(self, rollout: Rollout, error: RolloutException) -> DriveOutcome:
        """将发布置为 FAILED 并记录错误，已完成的阶段保留"""
        fresh = self._store.get_rollout(rollout.backend, rollout.rollout_id)
        if fresh.is_terminal:
            self._untrack(fresh)
            return DriveOutcome(rollout=fresh, action=Action.TERMINAL, error=error)

        now = self._clock.now()
        fresh.state = RolloutState.FAILED
        fresh.error = error.to_status()
        fresh.reconciling = False
        fresh.update_time = now
        saved = self._store.save_rollout(fresh)

        self._retries.pop(saved.name, None)
        self._untrack(saved)
        await self._emit([RolloutEvent(
            kind=EventKind.STATE_CHANGED,
            rollout=saved.name,
            time=now,
            state=saved.state,
            stage_index=saved.stage_index if saved.stage_index >= 0 else None,
            message=error.message,
        )])
        self._log_terminal(saved)
        return DriveOutcome(rollout=saved, action=Action.TERMINAL, error=error)

    # ==================== 内部工具 ====================

    def _require_active(self, backend: str, rollout_id: str) -> Rollout:
        rollout = self._store.get_rollout(backend, rollout_id)
        if rollout.is_terminal:
            raise RolloutConflict(f"发布 {rollout.name} 已结束 ({rollout.state.value})")
        return rollout

    def _clear_reconciling(self, backend: str, rollout_id: str) -> Rollout:
        rollout = self._store.get_rollout(backend, rollout_id)
        if not rollout.reconciling:
            return rollout
        return self._store.save_rollout(replace(rollout, reconciling=False))

    def _lock_for(self, backend: str) -> asyncio.Lock:
        lock = self._locks.get(backend)
        if lock is None:
            lock = self._locks[backend] = asyncio.Lock()
        return lock

    def _untrack(self, rollout: Rollout):
        if self._tracked.get(rollout.backend) == rollout.rollout_id:
            del self._tracked[rollout.backend]

    def _log_terminal(self, rollout: Rollout):
        if rollout.state is RolloutState.SUCCEEDED:
            logger.info("发布完成", rollout=rollout.name, build=rollout.build)
        elif rollout.state is RolloutState.CANCELLED:
            logger.info("发布已取消", rollout=rollout.name)
        else:
            logger.error(
                "发布失败",
                rollout=rollout.name,
                error=rollout.error.message if rollout.error else None
            )

    async def _emit(self, events: List[RolloutEvent]):
        for event in events:
            for callback in self._listeners:
                await self._call_callback(callback, event)

    async def _call_callback(self, callback: Callable, *args):
        """调用回调"""
        try:
            if asyncio.iscoroutinefunction(callback):
                await callback(*args)
            else:
                callback(*args)
        except Exception as e:
            logger.error("回调执行失败", error=str(e))
