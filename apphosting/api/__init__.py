"""
应用托管发布控制器 - API 路由汇总
"""
from fastapi import APIRouter

from apphosting.api.builds import router as builds_router
from apphosting.api.rollouts import router as rollouts_router
from apphosting.api.traffic import router as traffic_router

api_router = APIRouter()

api_router.include_router(rollouts_router)
api_router.include_router(traffic_router)
api_router.include_router(builds_router)
