# 应用托管发布控制器 - 测试夹具
"""共享测试夹具"""

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from apphosting.core.config import Settings
from apphosting.rollout.interfaces import ManualClock
from apphosting.rollout.memory import InMemoryBuildRegistry, InMemoryTrafficBackend
from apphosting.rollout.models import Build, BuildState
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.rollout.status import StatusReporter
from apphosting.rollout.store import RolloutStore


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def builds() -> InMemoryBuildRegistry:
    registry = InMemoryBuildRegistry()
    registry.register(Build(name="build-old", state=BuildState.READY))
    registry.register(Build(name="build-new", state=BuildState.READY))
    return registry


@pytest.fixture
def traffic_backend() -> InMemoryTrafficBackend:
    return InMemoryTrafficBackend()


@pytest.fixture
def store() -> RolloutStore:
    return RolloutStore()


@pytest.fixture
def scheduler(store, builds, traffic_backend, clock) -> RolloutScheduler:
    return RolloutScheduler(
        store,
        builds,
        traffic_backend,
        clock=clock,
        max_apply_attempts=3,
        retry_base_delay=0,
        retry_max_delay=0,
    )


@pytest.fixture
def reporter(scheduler, store, clock) -> StatusReporter:
    reporter = StatusReporter(store, clock)
    scheduler.on_event(reporter.record)
    return reporter


@pytest.fixture
async def client(scheduler, reporter):
    """测试客户端（不启动调度循环，由测试手动 tick）"""
    from apphosting.main import create_app

    settings = Settings(LOG_LEVEL="WARNING")
    app = create_app(settings=settings, scheduler=scheduler, reporter=reporter)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
