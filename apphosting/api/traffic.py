"""
应用托管发布控制器 - 流量管理 API
"""
from fastapi import APIRouter, Depends

from apphosting.api.deps import get_scheduler
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.schemas.schemas import ResponseBase, TrafficUpdate

router = APIRouter(prefix="/backends/{backend}/traffic", tags=["流量管理"])


@router.get("", response_model=ResponseBase)
async def get_traffic(
    backend: str,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """获取后端流量配置，首次访问时按默认策略创建"""
    traffic = scheduler.store.get_or_create_traffic(backend, scheduler.clock.now())
    return ResponseBase(data=traffic.to_dict())


@router.patch("", response_model=ResponseBase)
async def update_traffic(
    backend: str,
    traffic_in: TrafficUpdate,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """更新流量配置：手动目标立即下发，发布策略仅保存"""
    target = traffic_in.target_set()
    if target is not None:
        traffic = await scheduler.set_target(backend, target)
    else:
        traffic = await scheduler.set_policy(backend, traffic_in.rollout_policy.to_policy())
    return ResponseBase(message="流量配置已更新", data=traffic.to_dict())
