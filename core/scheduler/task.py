"""
任务数据模型
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional
import itertools
import time
import uuid

from core.errors import SchedulerError
from .task_lifecycle import TaskLifecycle, TaskState, TaskStateTransition

# 提交序号，用于同优先级 FIFO
_sequence = itertools.count()


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


@dataclass
class TaskError:
    """任务失败信息"""
    cause: str
    message: str
    retriable: bool = False

    @classmethod
    def from_exception(cls, exc: Exception) -> "TaskError":
        if isinstance(exc, SchedulerError):
            return cls(cause=exc.cause, message=exc.message, retriable=exc.retriable)
        return cls(cause="execution_failure", message=str(exc) or type(exc).__name__)

    def to_dict(self) -> dict:
        return {"cause": self.cause, "message": self.message, "retriable": self.retriable}


@dataclass
class Task:
    """
    调度任务

    base_priority 提交后不可变；dynamic_priority 每个调度周期由优先级计算器
    重新计算，调用方不得直接修改。resource_intensity 为占 GPU 总显存的比例。
    """
    id: str
    model_id: str
    payload: Any = None
    base_priority: float = 0.0
    resource_intensity: float = 0.1
    quality_requirement: float = 0.8
    deadline: Optional[float] = None
    dependencies: FrozenSet[str] = field(default_factory=frozenset)
    category: str = "general"
    context_id: Optional[str] = None
    timeout: Optional[float] = None
    callback_url: Optional[str] = None
    callback_events: Optional[List[str]] = None

    state: TaskState = TaskState.QUEUED
    dynamic_priority: float = 0.0
    chunks: List[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    chunk_index: Optional[int] = None

    submitted_at: float = field(default_factory=time.time)
    sequence: int = field(default_factory=lambda: next(_sequence))
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    model_variant: Optional[str] = None
    preemptively_degraded: bool = False
    progress: float = 0.0
    cancel_requested: bool = False
    deferred_ticks: int = 0
    passed_over_ticks: int = 0
    error: Optional[TaskError] = None
    result: Any = None
    transitions: List[TaskStateTransition] = field(default_factory=list)

    def __post_init__(self):
        self.dependencies = frozenset(self.dependencies)

    @property
    def is_terminal(self) -> bool:
        return TaskLifecycle.is_terminal(self.state)

    @property
    def waiting_ticks(self) -> int:
        """执行器空闲时未被派发的周期数（推迟 + 被越过）"""
        return self.deferred_ticks + self.passed_over_ticks

    @property
    def is_chunk(self) -> bool:
        return self.parent_id is not None

    @property
    def is_split(self) -> bool:
        return bool(self.chunks)

    def transition(
        self,
        to_state: TaskState,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskStateTransition:
        """校验并执行状态转换"""
        record = TaskLifecycle.create_transition(
            self.state, to_state, reason=reason, metadata=metadata, task_id=self.id
        )
        self.state = to_state
        self.transitions.append(record)
        if TaskLifecycle.is_terminal(to_state):
            self.completed_at = record.timestamp
        return record

    def fail(self, exc: Exception, reason: Optional[str] = None) -> None:
        self.error = TaskError.from_exception(exc)
        self.transition(TaskState.FAILED, reason=reason or self.error.cause)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "model_variant": self.model_variant,
            "state": self.state.value,
            "base_priority": self.base_priority,
            "dynamic_priority": self.dynamic_priority,
            "resource_intensity": self.resource_intensity,
            "quality_requirement": self.quality_requirement,
            "deadline": self.deadline,
            "dependencies": sorted(self.dependencies),
            "category": self.category,
            "chunks": list(self.chunks),
            "parent_id": self.parent_id,
            "chunk_index": self.chunk_index,
            "submitted_at": self.submitted_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "progress": self.progress,
            "error": self.error.to_dict() if self.error else None,
        }
