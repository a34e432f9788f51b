"""
任务管理 API 路由
"""
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
import structlog

from api.dependencies import get_task_service
from api.schemas.response import APIResponse, PaginationInfo
from api.schemas.task import (
    FeedbackCreate,
    FeedbackResponse,
    TaskBatchCreate,
    TaskBatchResponse,
    TaskCreate,
    TaskListResponse,
    TaskResponse,
    TaskResultResponse,
)
from core.scheduler import TaskState
from core.services.task_service import TaskService

logger = structlog.get_logger(__name__)
router = APIRouter()


def task_to_response(service: TaskService, task_id: str) -> TaskResponse:
    """带队列位置和预计等待时间的任务响应"""
    task = service.get_task(task_id)
    status = service.get_status(task_id)
    return TaskResponse.from_task(
        task,
        position=status.position,
        estimated_wait=service.estimate_wait_time(status.position),
    )


@router.post("", response_model=APIResponse[TaskResponse], status_code=202)
async def submit_task(
    request: TaskCreate,
    service: TaskService = Depends(get_task_service),
):
    """
    提交任务

    - 立即返回任务 ID 和队列位置
    - 调度在后台异步进行
    """
    task = service.submit_task(**request.to_submit_kwargs())

    return APIResponse(
        success=True,
        code=202,
        message="任务已提交",
        data=task_to_response(service, task.id),
    )


@router.post("/batch", response_model=APIResponse[TaskBatchResponse], status_code=202)
async def submit_batch_tasks(
    request: TaskBatchCreate,
    service: TaskService = Depends(get_task_service),
):
    """批量提交任务，单个任务失败不影响其余任务"""
    tasks, errors = service.submit_batch([t.to_submit_kwargs() for t in request.tasks])

    return APIResponse(
        success=True,
        code=202,
        message=f"已提交 {len(tasks)} 个任务",
        data=TaskBatchResponse(
            submitted=len(tasks),
            failed=len(errors),
            task_ids=[t.id for t in tasks],
            errors=errors,
        ),
    )


@router.get("", response_model=APIResponse[TaskListResponse])
async def list_tasks(
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    state: Optional[TaskState] = Query(None, description="按状态过滤"),
    category: Optional[str] = Query(None, description="按反馈类别过滤"),
    model: Optional[str] = Query(None, description="按模型过滤"),
    include_chunks: bool = Query(False, description="是否包含分块任务"),
    service: TaskService = Depends(get_task_service),
):
    """获取任务列表（按提交时间倒序）"""
    tasks, total = service.list_tasks(
        page=page,
        page_size=page_size,
        state=state.value if state else None,
        category=category,
        model=model,
        include_chunks=include_chunks,
    )

    items = [task_to_response(service, t.id) for t in tasks]
    total_pages = (total + page_size - 1) // page_size

    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=TaskListResponse(
            items=items,
            pagination=PaginationInfo(
                page=page,
                page_size=page_size,
                total_items=total,
                total_pages=total_pages,
            ),
        ),
    )


@router.get("/{task_id}", response_model=APIResponse[TaskResponse])
async def get_task(
    task_id: str = Path(..., description="任务 ID"),
    service: TaskService = Depends(get_task_service),
):
    """查询任务状态"""
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=task_to_response(service, task_id),
    )


@router.get("/{task_id}/result", response_model=APIResponse[TaskResultResponse])
async def get_task_result(
    task_id: str = Path(..., description="任务 ID"),
    service: TaskService = Depends(get_task_service),
):
    """
    获取任务结果

    任务未结束时返回 400；分块任务返回按分块序号合并后的结果
    """
    service.get_task_result(task_id)
    status = service.get_status(task_id)

    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=TaskResultResponse.from_status(status),
    )


@router.post("/{task_id}/cancel", response_model=APIResponse[TaskResponse])
async def cancel_task(
    task_id: str = Path(..., description="任务 ID"),
    service: TaskService = Depends(get_task_service),
):
    """
    取消任务

    排队中的任务立即取消；运行中的任务在下一个检查点停止
    """
    status = service.cancel_task(task_id)
    message = "取消请求已受理" if status.state == TaskState.RUNNING else "任务已取消"

    return APIResponse(
        success=True,
        code=200,
        message=message,
        data=task_to_response(service, task_id),
    )


@router.post("/{task_id}/feedback", response_model=APIResponse[FeedbackResponse])
async def submit_feedback(
    request: FeedbackCreate,
    task_id: str = Path(..., description="任务 ID"),
    service: TaskService = Depends(get_task_service),
):
    """提交任务反馈（影响同类别任务的后续优先级）"""
    record = service.record_feedback(
        task_id,
        rating=request.rating,
        quality=request.quality,
        latency=request.latency,
    )

    return APIResponse(
        success=True,
        code=200,
        message="反馈已记录",
        data=FeedbackResponse(
            task_id=record["task_id"],
            rating=record["rating"],
            category=record["category"],
            source=record["source"],
            timestamp=record["timestamp"],
        ),
    )
