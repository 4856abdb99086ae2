"""
应用托管发布控制器 - 构建登记 API
"""
from fastapi import APIRouter, Depends

from apphosting.api.deps import get_build_registry, get_scheduler
from apphosting.exceptions import RolloutException, RolloutNotFound
from apphosting.rollout.interfaces import BuildLookup
from apphosting.rollout.memory import InMemoryBuildRegistry
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.schemas.schemas import BuildUpsert, ResponseBase

router = APIRouter(prefix="/backends/{backend}/builds", tags=["构建登记"])


@router.put("/{build_id}", response_model=ResponseBase)
async def upsert_build(
    backend: str,
    build_id: str,
    build_in: BuildUpsert,
    registry: BuildLookup = Depends(get_build_registry),
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """登记或更新构建状态，保留首次登记时间"""
    if not isinstance(registry, InMemoryBuildRegistry):
        raise RolloutException("当前构建来源只读，不支持登记", code=405, status_code=405)

    try:
        existing = await registry.get_build(build_id)
        create_time = existing.create_time
    except RolloutNotFound:
        create_time = scheduler.clock.now()

    build = registry.register(build_in.to_build(build_id, create_time))
    return ResponseBase(message="构建已登记", data=build.to_dict())


@router.get("/{build_id}", response_model=ResponseBase)
async def get_build(
    backend: str,
    build_id: str,
    registry: BuildLookup = Depends(get_build_registry)
):
    """获取构建"""
    build = await registry.get_build(build_id)
    return ResponseBase(data=build.to_dict())
