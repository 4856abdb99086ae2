"""
应用托管发布控制器 - 发布管理 API
"""
from fastapi import APIRouter, Depends

from apphosting.api.deps import get_reporter, get_scheduler
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.rollout.status import StatusReporter
from apphosting.schemas.schemas import ResponseBase, RolloutCreate

router = APIRouter(prefix="/backends/{backend}/rollouts", tags=["发布管理"])


@router.post("", response_model=ResponseBase, status_code=201)
async def create_rollout(
    backend: str,
    rollout_in: RolloutCreate,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """创建发布"""
    rollout = await scheduler.submit(backend, rollout_in)
    return ResponseBase(message="发布已创建", data=rollout.to_dict())


@router.get("", response_model=ResponseBase)
async def list_rollouts(
    backend: str,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """获取发布列表"""
    rollouts = scheduler.store.list_rollouts(backend)
    return ResponseBase(data={
        "items": [rollout.to_dict() for rollout in rollouts],
        "total": len(rollouts),
    })


@router.get("/{rollout_id}", response_model=ResponseBase)
async def get_rollout(
    backend: str,
    rollout_id: str,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """获取发布详情"""
    rollout = scheduler.store.get_rollout(backend, rollout_id)
    return ResponseBase(data=rollout.to_dict())


@router.get("/{rollout_id}/status", response_model=ResponseBase)
async def get_rollout_status(
    backend: str,
    rollout_id: str,
    reporter: StatusReporter = Depends(get_reporter)
):
    """获取发布状态与事件"""
    status = reporter.snapshot(backend, rollout_id)
    data = status.to_dict()
    data["events"] = [event.to_dict() for event in reporter.events(backend, rollout_id)]
    return ResponseBase(data=data)


@router.post("/{rollout_id}/cancel", response_model=ResponseBase)
async def cancel_rollout(
    backend: str,
    rollout_id: str,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """取消发布"""
    rollout = await scheduler.cancel(backend, rollout_id)
    return ResponseBase(message="已请求取消", data=rollout.to_dict())


@router.post("/{rollout_id}/pause", response_model=ResponseBase)
async def pause_rollout(
    backend: str,
    rollout_id: str,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """暂停发布"""
    rollout = await scheduler.pause(backend, rollout_id)
    return ResponseBase(message="发布已暂停", data=rollout.to_dict())


@router.post("/{rollout_id}/resume", response_model=ResponseBase)
async def resume_rollout(
    backend: str,
    rollout_id: str,
    scheduler: RolloutScheduler = Depends(get_scheduler)
):
    """恢复发布"""
    rollout = await scheduler.resume(backend, rollout_id)
    return ResponseBase(message="发布已恢复", data=rollout.to_dict())
