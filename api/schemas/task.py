"""
任务相关数据模型
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

from core.scheduler import Task, TaskState, TaskStatus
from .response import PaginationInfo


def _to_datetime(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class CallbackConfig(BaseModel):
    """回调配置"""
    url: str = Field(..., description="回调 URL")
    events: List[str] = Field(
        default=["task.completed", "task.failed"],
        description="回调事件",
    )


class TaskCreate(BaseModel):
    """任务创建请求"""
    task_id: Optional[str] = Field(None, min_length=1, max_length=128, description="任务 ID（不填则自动生成）")
    model: str = Field(..., description="模型变体名称，如 llama-3-8b")
    payload: Any = Field(default=None, description="交给模型执行端的输入")
    base_priority: float = Field(default=0.0, description="基础优先级")
    resource_intensity: float = Field(default=0.1, gt=0, description="预估显存占用（占总显存比例）")
    quality_requirement: float = Field(default=0.8, ge=0, le=1.0, description="最低可接受质量")
    deadline: Optional[float] = Field(None, description="截止时间（Unix 时间戳，秒）")
    dependencies: List[str] = Field(default_factory=list, description="依赖的任务 ID")
    category: str = Field(default="general", description="反馈类别")
    context_id: Optional[str] = Field(None, description="可复用上下文 ID")
    timeout: Optional[float] = Field(None, gt=0, le=86400, description="超时时间（秒）")
    callback: Optional[CallbackConfig] = Field(None, description="回调配置")

    def to_submit_kwargs(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "model": self.model,
            "payload": self.payload,
            "base_priority": self.base_priority,
            "resource_intensity": self.resource_intensity,
            "quality_requirement": self.quality_requirement,
            "deadline": self.deadline,
            "dependencies": self.dependencies,
            "category": self.category,
            "context_id": self.context_id,
            "timeout": self.timeout,
            "callback_url": self.callback.url if self.callback else None,
            "callback_events": self.callback.events if self.callback else None,
        }


class TaskBatchCreate(BaseModel):
    """批量任务创建请求"""
    tasks: List[TaskCreate] = Field(..., min_length=1, max_length=100, description="任务列表")


class TaskErrorInfo(BaseModel):
    """任务失败信息"""
    cause: str = Field(..., description="错误原因标识")
    message: str = Field(..., description="错误信息")
    retriable: bool = Field(default=False, description="是否可重试")


class TaskResponse(BaseModel):
    """任务响应"""
    model_config = ConfigDict(protected_namespaces=())

    task_id: str = Field(..., description="任务 ID")
    state: TaskState = Field(..., description="任务状态")
    model: str = Field(..., description="请求的模型")
    model_variant: Optional[str] = Field(None, description="实际使用的模型变体")
    category: str = Field(..., description="反馈类别")

    base_priority: float = Field(..., description="基础优先级")
    dynamic_priority: float = Field(..., description="动态优先级")
    resource_intensity: float = Field(..., description="预估显存占用")
    quality_requirement: float = Field(..., description="最低可接受质量")
    dependencies: List[str] = Field(default_factory=list, description="依赖的任务 ID")

    created_at: datetime = Field(..., description="提交时间")
    started_at: Optional[datetime] = Field(None, description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="完成时间")
    deadline: Optional[datetime] = Field(None, description="截止时间")

    position: Optional[int] = Field(None, description="队列位置")
    estimated_wait_seconds: Optional[float] = Field(None, description="预计等待时间")
    progress: float = Field(default=0.0, description="进度 0-1")

    chunks: List[str] = Field(default_factory=list, description="分块任务 ID")
    parent_id: Optional[str] = Field(None, description="父任务 ID")
    error: Optional[TaskErrorInfo] = Field(None, description="错误信息")

    @classmethod
    def from_task(
        cls,
        task: Task,
        position: Optional[int] = None,
        estimated_wait: Optional[float] = None,
    ) -> "TaskResponse":
        return cls(
            task_id=task.id,
            state=task.state,
            model=task.model_id,
            model_variant=task.model_variant,
            category=task.category,
            base_priority=task.base_priority,
            dynamic_priority=round(task.dynamic_priority, 6),
            resource_intensity=task.resource_intensity,
            quality_requirement=task.quality_requirement,
            dependencies=sorted(task.dependencies),
            created_at=_to_datetime(task.submitted_at),
            started_at=_to_datetime(task.started_at),
            completed_at=_to_datetime(task.completed_at),
            deadline=_to_datetime(task.deadline),
            position=position,
            estimated_wait_seconds=estimated_wait,
            progress=task.progress,
            chunks=list(task.chunks),
            parent_id=task.parent_id,
            error=TaskErrorInfo(**task.error.to_dict()) if task.error else None,
        )


class TaskListResponse(BaseModel):
    """任务列表响应"""
    items: List[TaskResponse] = Field(..., description="任务列表")
    pagination: PaginationInfo = Field(..., description="分页信息")


class TaskBatchResponse(BaseModel):
    """批量任务创建响应"""
    submitted: int = Field(..., description="成功提交数量")
    failed: int = Field(..., description="失败数量")
    task_ids: List[str] = Field(..., description="成功创建的任务 ID")
    errors: List[Dict[str, Any]] = Field(default_factory=list, description="失败详情")


class TaskResultResponse(BaseModel):
    """任务结果响应"""
    model_config = ConfigDict(protected_namespaces=())

    task_id: str = Field(..., description="任务 ID")
    state: TaskState = Field(..., description="任务状态")
    model_variant: Optional[str] = Field(None, description="实际使用的模型变体")
    result: Any = Field(None, description="执行结果（分块任务按分块序号合并）")
    error: Optional[TaskErrorInfo] = Field(None, description="错误信息")
    duration_seconds: Optional[float] = Field(None, description="执行时长")

    @classmethod
    def from_status(cls, status: TaskStatus) -> "TaskResultResponse":
        duration = None
        if status.started_at and status.completed_at:
            duration = round(status.completed_at - status.started_at, 3)
        return cls(
            task_id=status.task_id,
            state=status.state,
            model_variant=status.model_variant,
            result=status.result,
            error=TaskErrorInfo(**status.error) if status.error else None,
            duration_seconds=duration,
        )


class FeedbackCreate(BaseModel):
    """任务反馈请求"""
    rating: float = Field(..., ge=1, le=5, description="评分 1-5")
    quality: Optional[float] = Field(None, ge=0, le=1.0, description="实际质量")
    latency: Optional[float] = Field(None, ge=0, description="实际延迟（秒）")


class FeedbackResponse(BaseModel):
    """任务反馈响应"""
    task_id: str = Field(..., description="任务 ID")
    rating: float = Field(..., description="评分")
    category: str = Field(..., description="反馈类别")
    source: str = Field(..., description="反馈来源")
    timestamp: float = Field(..., description="记录时间")
