"""
应用托管发布控制器 - 主应用入口
"""
from contextlib import asynccontextmanager
from typing import Optional
import time
import uuid

from fastapi import FastAPI, Request
import structlog

from apphosting.api import api_router
from apphosting.core.config import Settings, get_settings
from apphosting.core.logging import get_logger, setup_logging
from apphosting.exceptions.handlers import register_exception_handlers
from apphosting.rollout.interfaces import BuildLookup, TrafficBackend
from apphosting.rollout.memory import InMemoryBuildRegistry, InMemoryTrafficBackend
from apphosting.rollout.scheduler import RolloutScheduler
from apphosting.rollout.status import StatusReporter
from apphosting.rollout.store import JsonFileStore, RolloutStore

logger = get_logger("apphosting")


def build_scheduler(
    settings: Settings,
    builds: Optional[BuildLookup] = None,
    traffic_backend: Optional[TrafficBackend] = None
) -> RolloutScheduler:
    """
    按配置装配调度器

    未指定构建来源和流量后端时使用本地实现，构建通过 builds 接口登记。
    """
    store = JsonFileStore(settings.STATE_FILE) if settings.STATE_FILE else RolloutStore()
    return RolloutScheduler.from_settings(
        settings,
        store,
        builds or InMemoryBuildRegistry(),
        traffic_backend or InMemoryTrafficBackend(),
    )


def create_app(
    settings: Optional[Settings] = None,
    scheduler: Optional[RolloutScheduler] = None,
    reporter: Optional[StatusReporter] = None
) -> FastAPI:
    """创建应用"""
    settings = settings or get_settings()
    scheduler = scheduler or build_scheduler(settings)
    if reporter is None:
        reporter = StatusReporter(scheduler.store, scheduler.clock)
        scheduler.on_event(reporter.record)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        setup_logging(
            level=settings.LOG_LEVEL,
            json_format=settings.LOG_FORMAT == "json",
            log_file=settings.LOG_FILE,
            service=settings.APP_NAME,
            version=settings.APP_VERSION
        )
        logger.info("启动应用托管发布控制器...")
        await scheduler.start()

        yield

        await scheduler.stop()
        logger.info("控制器已关闭")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="渐进式发布与流量切分控制器",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.scheduler = scheduler
    app.state.builds = scheduler.builds
    app.state.reporter = reporter

    # 请求日志中间件
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """记录请求日志并添加请求ID"""
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        process_time = (time.time() - start_time) * 1000
        if request.url.path != "/health":
            logger.info(
                "request_completed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                process_time_ms=round(process_time, 2)
            )

        response.headers["X-Process-Time"] = f"{process_time:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/health")
    async def health_check():
        """健康检查接口"""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
            "tracked_rollouts": len(scheduler.tracked)
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "apphosting.main:app",
        host=_settings.HOST,
        port=_settings.PORT,
        reload=_settings.DEBUG,
    )
