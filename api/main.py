"""
FastAPI 应用主入口

启动时构建调度器并运行三个后台循环：
- 资源监控轮询
- 调度周期
- 反馈批量折叠
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routers import tasks, models, system
from api.middleware import LoggingMiddleware, register_exception_handlers
from api.schemas.response import success_response
from core.config import Settings, get_settings
from core.scheduler import Scheduler, build_scheduler, create_redis_client
from logging_config import setup_logging, get_logger

logger = get_logger(__name__)


async def start_background_loops(app: FastAPI, scheduler: Scheduler, settings: Settings) -> None:
    """启动后台循环"""
    app.state.background_tasks = [
        asyncio.create_task(scheduler.monitor.start_polling(settings.monitor.poll_interval)),
        asyncio.create_task(scheduler.start_scheduling_loop()),
        asyncio.create_task(scheduler.feedback.start_flush_loop()),
    ]


async def stop_background_loops(app: FastAPI, scheduler: Scheduler) -> None:
    """停止后台循环并关闭调度器"""
    scheduler.feedback.stop_flush_loop()
    scheduler.monitor.stop_polling()
    await scheduler.shutdown()

    for task in getattr(app.state, "background_tasks", []):
        task.cancel()
    await asyncio.gather(*getattr(app.state, "background_tasks", []), return_exceptions=True)
    app.state.background_tasks = []

    scheduler.monitor.shutdown()


def create_app(
    settings: Optional[Settings] = None,
    scheduler: Optional[Scheduler] = None,
    run_background: bool = True,
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        settings: 应用配置（默认读取环境变量）
        scheduler: 预先构建的调度器（测试时注入）
        run_background: 是否在生命周期内运行后台循环
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        logger.info(
            "application_starting",
            app_name=settings.app_name,
            version=settings.app_version,
            environment=settings.environment,
        )

        app.state.start_time = datetime.now(timezone.utc)
        if getattr(app.state, "scheduler", None) is None:
            app.state.scheduler = build_scheduler(settings, create_redis_client(settings))

        if run_background:
            await start_background_loops(app, app.state.scheduler, settings)

        logger.info("application_started", config=settings.display_config())

        yield

        logger.info("application_shutting_down")
        if run_background:
            await stop_background_loops(app, app.state.scheduler)
        else:
            await app.state.scheduler.shutdown()
        logger.info("application_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="DediGPU - 单 GPU 专用 AI 任务调度服务",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.scheduler = scheduler

    # ===== 中间件 =====

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    register_exception_handlers(app, debug=settings.debug)

    # ===== 路由 =====

    api_prefix = settings.api_prefix

    @app.get("/health")
    async def health_check_root():
        """根路径健康检查"""
        return success_response(
            data={
                "status": "healthy",
                "version": settings.app_version,
            }
        )

    @app.get(f"{api_prefix}/health")
    async def health_check():
        """API 健康检查"""
        start_time = getattr(app.state, "start_time", None)
        uptime = (datetime.now(timezone.utc) - start_time).total_seconds() if start_time else 0

        current = app.state.scheduler.running_task() if app.state.scheduler else None
        return success_response(
            data={
                "status": "healthy",
                "version": settings.app_version,
                "uptime_seconds": round(uptime, 2),
                "environment": settings.environment,
                "running_task": current.id if current else None,
            }
        )

    app.include_router(tasks.router, prefix=f"{api_prefix}/tasks", tags=["Tasks"])
    app.include_router(models.router, prefix=f"{api_prefix}/models", tags=["Models"])
    app.include_router(system.router, prefix=f"{api_prefix}/system", tags=["System"])

    return app


app = create_app()
