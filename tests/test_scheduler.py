# 应用托管发布控制器 - 发布调度器测试
"""准入控制、周期推进、重试、暂停与取消测试"""

from datetime import timedelta

import pytest

from apphosting.exceptions import InvalidPolicy, InvalidSplit, RolloutConflict
from apphosting.exceptions.exceptions import RPC_UNAVAILABLE
from apphosting.rollout.machine import Action, EventKind
from apphosting.rollout.memory import InMemoryBuildRegistry, InMemoryTrafficBackend
from apphosting.rollout.models import (
    Build,
    BuildState,
    Progression,
    RolloutPolicy,
    RolloutStage,
    RolloutState,
    Status,
)
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.rollout.store import JsonFileStore, RolloutStore
from apphosting.rollout.traffic import TrafficSet
from apphosting.schemas import RolloutCreate, RolloutStageCreate

pytestmark = pytest.mark.asyncio

OLD = TrafficSet.single("build-old")


def _request(*stages, build="build-new", **kwargs) -> RolloutCreate:
    return RolloutCreate(build=build, stages=list(stages) or None, **kwargs)


def _linear(percent, minutes=10) -> RolloutStageCreate:
    return RolloutStageCreate(progression="LINEAR", duration=minutes * 60, target_percent=percent)


async def _serving_old(scheduler, backend="web"):
    """让后端先承载旧构建的全部流量"""
    await scheduler.set_target(backend, OLD)


class TestSubmit:
    """提交发布测试"""

    async def test_submit_queued(self, scheduler, store):
        """测试提交后处于 QUEUED"""
        rollout = await scheduler.submit("web", _request(_linear(100)))

        assert rollout.state is RolloutState.QUEUED
        assert rollout.rollout_id.startswith("rollout-")
        assert rollout.name == f"backends/web/rollouts/{rollout.rollout_id}"
        assert scheduler.tracked == {"web": rollout.rollout_id}
        assert store.get_rollout("web", rollout.rollout_id).etag == rollout.etag

    async def test_conflict(self, scheduler):
        """测试同一后端不能同时有两个进行中的发布"""
        await scheduler.submit("web", _request(_linear(100)))

        with pytest.raises(RolloutConflict):
            await scheduler.submit("web", _request(_linear(100)))

        # 其他后端不受影响
        other = await scheduler.submit("api", _request(_linear(100)))
        assert other.backend == "api"

    async def test_submit_after_terminal(self, scheduler):
        """测试上一个发布结束后可以再次提交"""
        first = await scheduler.submit("web", _request())
        await scheduler.tick()
        assert scheduler.store.get_rollout("web", first.rollout_id).state is RolloutState.SUCCEEDED

        second = await scheduler.submit("web", _request(build="build-old"))
        assert second.state is RolloutState.QUEUED

    async def test_invalid_policy(self, scheduler):
        """测试非法策略在提交时拒绝"""
        with pytest.raises(InvalidPolicy):
            await scheduler.submit("web", _request(_linear(60), _linear(40)))
        with pytest.raises(InvalidPolicy):
            await scheduler.submit("web", _request(_linear(50)))
        assert scheduler.tracked == {}

    async def test_default_stages_from_policy(self, scheduler):
        """测试未指定阶段时使用后端发布策略"""
        policy = RolloutPolicy(stages=[
            RolloutStage(Progression.EXPONENTIAL, timedelta(minutes=30), 100),
        ])
        await scheduler.set_policy("web", policy)

        rollout = await scheduler.submit("web", _request())
        assert [s.progression for s in rollout.stages] == [Progression.EXPONENTIAL]

    async def test_default_immediate(self, scheduler):
        """测试新后端默认一次性切换"""
        rollout = await scheduler.submit("web", _request())
        assert [(s.progression, s.target_percent) for s in rollout.stages] == [
            (Progression.IMMEDIATE, 100)
        ]

    async def test_disabled_policy(self, scheduler):
        """测试后端策略停用时拒绝提交"""
        traffic = await scheduler.set_policy("web", RolloutPolicy(disabled=True))
        assert traffic.rollout_policy.disabled_time == scheduler.clock.now()

        with pytest.raises(InvalidPolicy):
            await scheduler.submit("web", _request(_linear(100)))


class TestProgressionScenario:
    """端到端推进场景测试"""

    async def test_linear_pause_linear(self, scheduler, clock, traffic_backend, store):
        """测试 LINEAR 50% / PAUSE / LINEAR 100% 场景"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request(
            _linear(50),
            RolloutStageCreate(progression="PAUSE"),
            _linear(100),
        ))
        rid = rollout.rollout_id

        await scheduler.tick()
        assert store.get_rollout("web", rid).state is RolloutState.PROGRESSING

        clock.advance(minutes=5)
        await scheduler.tick()
        assert traffic_backend.live["web"].percent_of("build-new") == 25

        clock.advance(minutes=5)
        await scheduler.tick()
        rollout = store.get_rollout("web", rid)
        assert rollout.state is RolloutState.PAUSED
        assert rollout.stage_index == 1
        assert store.get_traffic("web").current.as_dict() == {"build-old": 50, "build-new": 50}

        # 暂停阶段不会自行结束
        clock.advance(hours=6)
        outcomes = await scheduler.tick()
        assert outcomes[0].action is Action.NO_CHANGE
        assert store.get_rollout("web", rid).state is RolloutState.PAUSED

        await scheduler.resume("web", rid)
        await scheduler.tick()
        assert store.get_rollout("web", rid).state is RolloutState.PROGRESSING

        clock.advance(minutes=5)
        await scheduler.tick()
        assert traffic_backend.live["web"].percent_of("build-new") == 75

        clock.advance(minutes=5)
        await scheduler.tick()
        rollout = store.get_rollout("web", rid)
        assert rollout.state is RolloutState.SUCCEEDED
        assert store.get_traffic("web").current == TrafficSet.single("build-new")
        assert scheduler.tracked == {}

        stages = rollout.stages
        for previous, following in zip(stages, stages[1:]):
            assert previous.end_time <= following.start_time

    async def test_percent_non_decreasing(self, scheduler, clock, store):
        """测试线性推进中占比单调不减"""
        await _serving_old(scheduler)
        await scheduler.submit("web", _request(_linear(100)))

        last = 0
        for _ in range(12):
            await scheduler.tick()
            percent = store.get_traffic("web").current.percent_of("build-new")
            assert percent >= last
            last = percent
            clock.advance(minutes=1)
        assert last == 100

    async def test_exponential_first_rollout(self, scheduler, traffic_backend, store):
        """测试后端首次发布直接承载全部流量"""
        rollout = await scheduler.submit("fresh", _request(
            RolloutStageCreate(progression="EXPONENTIAL", duration="600s", target_percent=100)
        ))
        await scheduler.tick()

        assert traffic_backend.live["fresh"] == TrafficSet.single("build-new")
        assert store.get_rollout("fresh", rollout.rollout_id).state is RolloutState.PROGRESSING

    async def test_reapply_same_split_is_noop(self, scheduler, clock, traffic_backend):
        """测试分配未变化时不重复下发"""
        await _serving_old(scheduler)
        await scheduler.submit("web", _request(_linear(100)))

        await scheduler.tick()
        count = traffic_backend.apply_count
        await scheduler.tick()
        await scheduler.tick()
        assert traffic_backend.apply_count == count


class TestPauseAndCancel:
    """暂停与取消测试"""

    async def test_pause_excluded_from_elapsed(self, scheduler, clock, store, traffic_backend):
        """测试外部暂停时间不计入阶段耗时"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request(_linear(100)))
        rid = rollout.rollout_id

        await scheduler.tick()
        clock.advance(minutes=2)
        await scheduler.tick()
        assert traffic_backend.live["web"].percent_of("build-new") == 20

        await scheduler.pause("web", rid)
        clock.advance(minutes=5)
        await scheduler.tick()
        assert store.get_rollout("web", rid).state is RolloutState.PAUSED
        assert traffic_backend.live["web"].percent_of("build-new") == 20

        await scheduler.resume("web", rid)
        assert store.get_rollout("web", rid).stage_paused == timedelta(minutes=5)

        clock.advance(minutes=5)
        await scheduler.tick()
        assert traffic_backend.live["web"].percent_of("build-new") == 70

    async def test_pause_during_pause_stage(self, scheduler, clock, store):
        """测试外部暂停与暂停阶段叠加"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request(
            RolloutStageCreate(progression="IMMEDIATE", target_percent=10),
            RolloutStageCreate(progression="PAUSE"),
            RolloutStageCreate(progression="IMMEDIATE", target_percent=100),
        ))
        rid = rollout.rollout_id
        await scheduler.tick()

        await scheduler.pause("web", rid)
        # 第一次恢复只解除外部暂停
        await scheduler.resume("web", rid)
        await scheduler.tick()
        assert store.get_rollout("web", rid).state is RolloutState.PAUSED

        await scheduler.resume("web", rid)
        await scheduler.tick()
        assert store.get_rollout("web", rid).state is RolloutState.SUCCEEDED

    async def test_pause_after_resume_of_pause_stage(self, scheduler, clock, store, traffic_backend):
        """测试结束暂停阶段后立即外部暂停：暂停时间不计入下一阶段"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request(
            RolloutStageCreate(progression="IMMEDIATE", target_percent=10),
            RolloutStageCreate(progression="PAUSE"),
            _linear(100),
        ))
        rid = rollout.rollout_id
        await scheduler.tick()
        await scheduler.tick()
        assert store.get_rollout("web", rid).state is RolloutState.PAUSED

        await scheduler.resume("web", rid)
        await scheduler.pause("web", rid)
        await scheduler.tick()
        clock.advance(minutes=9)
        await scheduler.resume("web", rid)
        await scheduler.tick()

        assert traffic_backend.live["web"].percent_of("build-new") == 10
        current = store.get_rollout("web", rid)
        assert current.stage_index == 2
        assert current.stages[2].start_time == clock.now()

        clock.advance(minutes=5)
        await scheduler.tick()
        assert traffic_backend.live["web"].percent_of("build-new") == 55

    async def test_pause_after_stage_end_keeps_end_time(self, scheduler, clock, store):
        """测试阶段自然结束后才暂停时，结束时间不被顺延"""
        await _serving_old(scheduler)
        start = clock.now()
        rollout = await scheduler.submit("web", _request(_linear(50), _linear(100)))
        rid = rollout.rollout_id
        await scheduler.tick()

        clock.advance(minutes=12)
        await scheduler.pause("web", rid)
        clock.advance(minutes=5)
        resumed = await scheduler.resume("web", rid)
        assert resumed.stage_paused == timedelta(0)

        await scheduler.tick()
        stages = store.get_rollout("web", rid).stages
        assert stages[0].end_time == start + timedelta(minutes=10)
        assert stages[1].start_time == start + timedelta(minutes=10)

    async def test_cancel_keeps_current(self, scheduler, clock, store):
        """测试取消后保留最后一次成功下发的流量"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request(_linear(100)))
        rid = rollout.rollout_id

        await scheduler.tick()
        clock.advance(minutes=3)
        await scheduler.tick()
        live = store.get_traffic("web").current

        await scheduler.cancel("web", rid)
        clock.advance(minutes=3)
        await scheduler.tick()

        assert store.get_rollout("web", rid).state is RolloutState.CANCELLED
        assert store.get_traffic("web").current == live

    async def test_signal_on_terminal(self, scheduler):
        """测试对已结束的发布发送信号"""
        rollout = await scheduler.submit("web", _request())
        await scheduler.tick()

        with pytest.raises(RolloutConflict):
            await scheduler.cancel("web", rollout.rollout_id)
        with pytest.raises(RolloutConflict):
            await scheduler.pause("web", rollout.rollout_id)

    async def test_cancel_during_apply(self, store, builds, clock):
        """测试下发期间取消：流量已生效，推进结果丢弃"""

        class CancellingBackend(InMemoryTrafficBackend):
            scheduler = None
            rollout_id = None

            async def apply_traffic(self, backend, traffic_set):
                await super().apply_traffic(backend, traffic_set)
                if self.rollout_id:
                    await self.scheduler.cancel(backend, self.rollout_id)

        backend = CancellingBackend()
        scheduler = RolloutScheduler(store, builds, backend, clock=clock, retry_base_delay=0)
        backend.scheduler = scheduler
        await scheduler.set_target("web", OLD)

        rollout = await scheduler.submit("web", _request(
            RolloutStageCreate(progression="IMMEDIATE", target_percent=30),
            _linear(100),
        ))
        backend.rollout_id = rollout.rollout_id

        outcomes = await scheduler.tick()
        assert outcomes[0].action is Action.NO_CHANGE
        assert store.get_traffic("web").current.percent_of("build-new") == 30
        pending = store.get_rollout("web", rollout.rollout_id)
        assert pending.cancel_requested
        assert not pending.reconciling
        assert pending.stage_index == -1

        await scheduler.tick()
        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.CANCELLED
        assert store.get_traffic("web").current.percent_of("build-new") == 30


class TestFailures:
    """失败处理测试"""

    async def test_build_failed(self, scheduler, builds, store, traffic_backend):
        """测试构建失败时发布失败且流量不变"""
        await _serving_old(scheduler)
        error = Status(code=9, message="镜像构建失败")
        builds.register(Build(name="build-bad", state=BuildState.FAILED, error=error))
        count = traffic_backend.apply_count

        rollout = await scheduler.submit("web", _request(_linear(100), build="build-bad"))
        await scheduler.tick()

        failed = store.get_rollout("web", rollout.rollout_id)
        assert failed.state is RolloutState.FAILED
        assert failed.error == error
        assert store.get_traffic("web").current == OLD
        assert traffic_backend.apply_count == count

    async def test_apply_retry_exhausted(self, scheduler, store, traffic_backend):
        """测试连续下发失败3次后发布失败"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request())
        traffic_backend.fail_next(3)

        first = await scheduler.tick()
        assert first[0].error is not None
        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.QUEUED
        await scheduler.tick()
        await scheduler.tick()

        failed = store.get_rollout("web", rollout.rollout_id)
        assert failed.state is RolloutState.FAILED
        assert failed.error.code == RPC_UNAVAILABLE
        assert "3" in failed.error.message
        assert store.get_traffic("web").current == OLD
        assert not store.get_traffic("web").reconciling
        assert scheduler.tracked == {}

    async def test_retry_recovers(self, scheduler, store, traffic_backend):
        """测试失败次数未达上限时重试成功"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request())
        traffic_backend.fail_next(2)

        for _ in range(3):
            await scheduler.tick()

        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.SUCCEEDED
        assert store.get_traffic("web").current == TrafficSet.single("build-new")

    async def test_backoff(self, store, builds, clock):
        """测试退避期间不重试"""
        backend = InMemoryTrafficBackend()
        scheduler = RolloutScheduler(
            store, builds, backend, clock=clock,
            retry_base_delay=10, retry_max_delay=60
        )
        await scheduler.submit("web", _request())
        backend.fail_next(1)

        await scheduler.tick()
        assert backend.apply_count == 1
        clock.advance(seconds=5)
        await scheduler.tick()
        assert backend.apply_count == 1
        clock.advance(seconds=5)
        await scheduler.tick()
        assert backend.apply_count == 2

    async def test_build_lookup_exhausted(self, store, traffic_backend, clock):
        """测试查询构建连续失败时错误消息指明查询构建"""

        class UnreachableBuilds(InMemoryBuildRegistry):
            async def get_build(self, ref):
                raise ConnectionError("构建服务不可达")

        scheduler = RolloutScheduler(
            store, UnreachableBuilds(), traffic_backend, clock=clock, retry_base_delay=0
        )
        rollout = await scheduler.submit("web", _request())
        for _ in range(3):
            await scheduler.tick()

        failed = store.get_rollout("web", rollout.rollout_id)
        assert failed.state is RolloutState.FAILED
        assert failed.error.message.startswith("查询构建连续失败 3 次")
        assert "流量下发" not in failed.error.message
        assert traffic_backend.apply_count == 0

    async def test_pause_during_build_lookup(self, store, builds, traffic_backend, clock):
        """测试查询构建期间收到暂停：本次不下发，不报错"""

        class PausingBuilds(InMemoryBuildRegistry):
            scheduler = None
            rollout_id = None

            async def get_build(self, ref):
                if self.rollout_id:
                    rollout_id, self.rollout_id = self.rollout_id, None
                    await self.scheduler.pause("web", rollout_id)
                return await builds.get_build(ref)

        lookup = PausingBuilds()
        scheduler = RolloutScheduler(store, lookup, traffic_backend, clock=clock, retry_base_delay=0)
        lookup.scheduler = scheduler
        rollout = await scheduler.submit("web", _request())
        lookup.rollout_id = rollout.rollout_id

        outcomes = await scheduler.tick()
        assert outcomes[0].action is Action.NO_CHANGE
        assert outcomes[0].error is None
        assert traffic_backend.apply_count == 0
        paused = store.get_rollout("web", rollout.rollout_id)
        assert paused.paused
        assert not paused.reconciling

        await scheduler.resume("web", rollout.rollout_id)
        await scheduler.tick()
        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.SUCCEEDED

    async def test_missing_build_waits(self, scheduler, store, clock):
        """测试构建尚未登记时继续等待"""
        rollout = await scheduler.submit("web", _request(build="build-unknown"))
        await scheduler.tick()
        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.PENDING_BUILD

    async def test_build_ready_timeout(self, store, builds, traffic_backend, clock):
        """测试等待构建超时"""
        builds.register(Build(name="build-slow", state=BuildState.BUILDING))
        scheduler = RolloutScheduler(
            store, builds, traffic_backend, clock=clock, build_ready_timeout=60
        )
        rollout = await scheduler.submit("web", _request(build="build-slow"))

        await scheduler.tick()
        clock.advance(seconds=61)
        await scheduler.tick()
        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.FAILED


class TestTrafficConfig:
    """流量配置测试"""

    async def test_set_target(self, scheduler, traffic_backend):
        """测试手动指定分配"""
        ts = TrafficSet.of({"build-old": 90, "build-new": 10})
        traffic = await scheduler.set_target("web", ts)

        assert traffic.current == ts
        assert traffic.target == ts
        assert traffic.rollout_policy is None
        assert traffic_backend.live["web"] == ts

    async def test_set_target_invalid(self, scheduler, traffic_backend):
        """测试非法分配在下发前拒绝"""
        with pytest.raises(InvalidSplit):
            await scheduler.set_target("web", TrafficSet.of({"build-old": 90}))
        assert traffic_backend.apply_count == 0

    async def test_set_target_during_rollout(self, scheduler):
        """测试发布进行中不能手动指定分配"""
        await scheduler.submit("web", _request(_linear(100)))
        with pytest.raises(RolloutConflict):
            await scheduler.set_target("web", OLD)

    async def test_trigger(self, scheduler):
        """测试按分支自动触发"""
        policy = RolloutPolicy(
            stages=[RolloutStage(Progression.IMMEDIATE, target_percent=100)],
            codebase_branch="main",
        )
        await scheduler.set_policy("web", policy)

        assert await scheduler.trigger("web", "build-new", branch="dev") is None
        rollout = await scheduler.trigger("web", "build-new", branch="main")
        assert rollout is not None
        assert rollout.build == "build-new"


class TestEventsAndRecovery:
    """事件与恢复测试"""

    async def test_events(self, scheduler, reporter, clock):
        """测试事件回调"""
        await _serving_old(scheduler)
        rollout = await scheduler.submit("web", _request())
        await scheduler.tick()

        kinds = [e.kind for e in reporter.events("web", rollout.rollout_id)]
        assert EventKind.STAGE_STARTED in kinds
        assert EventKind.STAGE_COMPLETED in kinds
        assert kinds[-1] is EventKind.STATE_CHANGED

    async def test_async_listener(self, scheduler):
        """测试协程回调"""
        received = []

        async def listener(event):
            received.append(event)

        scheduler.on_event(listener)
        await scheduler.submit("web", _request())
        await scheduler.tick()
        assert received

    async def test_recover_from_file(self, tmp_path, builds, traffic_backend, clock):
        """测试重启后从状态文件恢复跟踪"""
        state_file = tmp_path / "state.json"
        first = RolloutScheduler(JsonFileStore(str(state_file)), builds, traffic_backend, clock=clock)
        await first.set_target("web", OLD)
        rollout = await first.submit("web", _request(_linear(100)))
        await first.tick()
        clock.advance(minutes=5)
        await first.tick()

        store = JsonFileStore(str(state_file))
        second = RolloutScheduler(store, builds, traffic_backend, clock=clock)
        assert await second.recover() == 1
        assert second.tracked == {"web": rollout.rollout_id}
        assert store.get_traffic("web").current.percent_of("build-new") == 50

        clock.advance(minutes=5)
        await second.tick()
        assert store.get_rollout("web", rollout.rollout_id).state is RolloutState.SUCCEEDED

    async def test_recover_reapplies_reconciling(self, builds, clock):
        """测试恢复时重新下发未确认的流量"""
        store = RolloutStore()
        traffic = store.get_or_create_traffic("web", clock.now())
        traffic.current = OLD
        traffic.reconciling = True
        store.save_traffic(traffic)

        backend = InMemoryTrafficBackend()
        scheduler = RolloutScheduler(store, builds, backend, clock=clock)
        await scheduler.recover()

        assert backend.live["web"] == OLD
        assert not store.get_traffic("web").reconciling

    async def test_start_stop(self, scheduler):
        """测试启动与停止调度循环"""
        await scheduler.start()
        await scheduler.stop()
