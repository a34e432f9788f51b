"""
系统状态 API 路由
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_app_settings, get_scheduler
from api.schemas.response import APIResponse
from api.schemas.system import (
    ForecastResponse,
    GPUSnapshotInfo,
    QueueStatusResponse,
    ResourceStatusResponse,
    SystemConfigResponse,
)
from core.config import Settings
from core.scheduler import Scheduler

router = APIRouter()


@router.get("/resources", response_model=APIResponse[ResourceStatusResponse])
async def get_resource_status(scheduler: Scheduler = Depends(get_scheduler)):
    """
    获取 GPU 使用情况

    返回:
    - 显存使用量
    - 利用率与温度
    - 当前运行的任务
    """
    summary = scheduler.monitor.get_summary()
    current = scheduler.running_task()

    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=ResourceStatusResponse(
            snapshot=GPUSnapshotInfo(**summary["snapshot"]),
            mock_mode=summary["mock_mode"],
            probe_failures=summary["probe_failures"],
            history_size=summary["history_size"],
            running_task=current.id if current else None,
        ),
    )


@router.get("/resources/forecast", response_model=APIResponse[ForecastResponse])
async def get_resource_forecast(
    horizon: float = Query(5.0, ge=0, le=3600, description="预测时长（秒）"),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """获取短期资源预测"""
    predicted = scheduler.monitor.forecast(horizon)

    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=ForecastResponse(
            snapshot=GPUSnapshotInfo(**predicted.snapshot.to_dict()),
            horizon=predicted.horizon,
            confidence=round(predicted.confidence, 4),
        ),
    )


@router.get("/queue", response_model=APIResponse[QueueStatusResponse])
async def get_queue_status(
    limit: int = Query(20, ge=1, le=200, description="返回的队首任务数"),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """获取任务队列状态"""
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=QueueStatusResponse(**scheduler.get_queue_status(limit)),
    )


@router.get("/config", response_model=APIResponse[SystemConfigResponse])
async def get_system_config(
    settings: Settings = Depends(get_app_settings),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """获取当前系统配置（脱敏）"""
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=SystemConfigResponse(
            version=settings.app_version,
            queue_backend=type(scheduler.queue).__name__,
            tick_interval_ms=scheduler.poll_interval_ms,
            starvation_ticks=scheduler.starvation_ticks,
            max_chunks=scheduler.admission.max_chunks,
            supported_models=scheduler.registry.list_names(),
        ),
    )


@router.get("/scheduler/stats")
async def get_scheduler_stats(scheduler: Scheduler = Depends(get_scheduler)):
    """获取调度器统计信息"""
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=scheduler.get_stats(),
    )


@router.get("/webhooks/stats")
async def get_webhook_stats(scheduler: Scheduler = Depends(get_scheduler)):
    """获取回调投递统计"""
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=scheduler.notifier.get_stats(),
    )


@router.get("/webhooks/records")
async def get_webhook_records(
    task_id: Optional[str] = Query(None, description="按任务过滤"),
    limit: int = Query(50, ge=1, le=500, description="返回条数"),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """获取最近的回调投递记录"""
    records = scheduler.notifier.client.get_records(task_id=task_id, limit=limit)
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=[r.to_dict() for r in records],
    )
