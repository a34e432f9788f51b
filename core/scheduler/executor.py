"""
任务执行器

独占 GPU 上同一时刻只运行一个任务。执行器调用模型执行端，
负责超时控制与协作式取消，运行结果交给调度器做状态处理。
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol
import asyncio
import time

import structlog

from core.errors import (
    CancellationRequested,
    ExecutionFailure,
    ResourceExhaustion,
    TaskTimeout,
)
from .resource_monitor import ResourceSnapshot
from .task import Task
from .task_lifecycle import TaskTimeoutManager

logger = structlog.get_logger(__name__)


class ExecutionOutcome(str, Enum):
    """执行结果类型"""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    EXHAUSTED = "exhausted"


@dataclass
class ExecutionResult:
    """单次执行结果"""
    task_id: str
    model_id: str
    outcome: ExecutionOutcome
    started_at: float
    finished_at: float
    result: Any = None
    error: Optional[Exception] = None
    progress: float = 0.0
    resource_profile: Optional[ResourceSnapshot] = None

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    @property
    def completed_fraction(self) -> float:
        """资源耗尽时已完成的比例"""
        if isinstance(self.error, ResourceExhaustion) and self.error.completed_fraction > 0:
            return self.error.completed_fraction
        return self.progress

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "model_id": self.model_id,
            "outcome": self.outcome.value,
            "duration_seconds": round(self.duration, 3),
            "progress": self.progress,
            "error": str(self.error) if self.error else None,
        }


class ExecutionContext:
    """
    执行上下文

    模型执行端在安全点调用 checkpoint()，取消请求只在检查点生效。
    """

    def __init__(self, task: Task, model_id: str, snapshot: Optional[ResourceSnapshot] = None):
        self.task = task
        self.model_id = model_id
        self.snapshot = snapshot
        self.started_at = time.time()

    @property
    def cancel_requested(self) -> bool:
        return self.task.cancel_requested

    def checkpoint(self) -> None:
        """
        取消检查点

        Raises:
            CancellationRequested: 已请求取消
        """
        if self.task.cancel_requested:
            raise CancellationRequested(self.task.id)

    def report_progress(self, progress: float) -> None:
        """上报进度 0-1"""
        self.task.progress = max(0.0, min(float(progress), 1.0))

    def log_context(self) -> dict:
        """返回用于日志的上下文"""
        return {
            "task_id": self.task.id,
            "model": self.model_id,
            "parent_id": self.task.parent_id,
        }


class ModelExecutionSink(Protocol):
    """模型执行端（外部协作者）"""

    async def execute(self, task: Task, model_id: str, context: ExecutionContext) -> Any:
        ...


class SimulatedExecutionSink:
    """
    模拟执行端（mock 模式）

    按资源强度成比例休眠，期间定期调用检查点并上报进度。
    """

    def __init__(self, seconds_per_unit: float = 2.0, step_seconds: float = 0.05):
        self.seconds_per_unit = seconds_per_unit
        self.step_seconds = step_seconds

    async def execute(self, task: Task, model_id: str, context: ExecutionContext) -> Any:
        duration = max(0.0, task.resource_intensity * self.seconds_per_unit)
        steps = max(1, int(duration / self.step_seconds))

        for i in range(steps):
            context.checkpoint()
            await asyncio.sleep(duration / steps)
            context.report_progress((i + 1) / steps)

        return {
            "task_id": task.id,
            "model_id": model_id,
            "output": f"simulated output of {model_id}",
            "duration_seconds": round(duration, 3),
        }


class TaskExecutor:
    """
    单槽位任务执行器

    reserve() 在调度时同步占用槽位，run() 在锁内执行，
    槽位在结果处理之前释放。
    """

    def __init__(self, sink: ModelExecutionSink, max_timeout: Optional[float] = None):
        self.sink = sink
        self.max_timeout = max_timeout or TaskTimeoutManager.MAX_TIMEOUT
        self._lock = asyncio.Lock()
        self._current: Optional[Task] = None

        self.stats = {
            "executions": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "timeout": 0,
            "exhausted": 0,
        }

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> Optional[Task]:
        return self._current

    def reserve(self, task: Task) -> bool:
        """占用执行槽位，已被占用时返回 False"""
        if self._current is not None:
            return False
        self._current = task
        return True

    def release(self, task: Task) -> None:
        """释放槽位（仅当槽位属于该任务）"""
        if self._current is task:
            self._current = None

    async def run(
        self,
        task: Task,
        model_id: Optional[str] = None,
        snapshot: Optional[ResourceSnapshot] = None,
    ) -> ExecutionResult:
        """
        执行任务

        Args:
            task: 已处于 running 状态的任务
            model_id: 实际使用的模型变体
            snapshot: 调度时的资源快照

        Returns:
            ExecutionResult 执行结果

        Raises:
            RuntimeError: 槽位已被其他任务占用
        """
        if self._current is not None and self._current is not task:
            raise RuntimeError(f"executor slot is occupied by {self._current.id}")
        self._current = task

        model_id = model_id or task.model_variant or task.model_id
        context = ExecutionContext(task, model_id, snapshot)
        timeout = TaskTimeoutManager.get_timeout(task.timeout, self.max_timeout)
        started_at = time.time()
        result = None
        error: Optional[Exception] = None

        async with self._lock:
            self.stats["executions"] += 1
            logger.info("task_executing", timeout=timeout, **context.log_context())
            try:
                context.checkpoint()
                if timeout is not None:
                    result = await asyncio.wait_for(
                        self.sink.execute(task, model_id, context), timeout
                    )
                else:
                    result = await self.sink.execute(task, model_id, context)

                if task.cancel_requested:
                    outcome = ExecutionOutcome.CANCELLED
                    error = CancellationRequested(task.id)
                else:
                    outcome = ExecutionOutcome.COMPLETED

            except CancellationRequested as e:
                outcome = ExecutionOutcome.CANCELLED
                error = e
            except asyncio.TimeoutError:
                outcome = ExecutionOutcome.TIMEOUT
                error = TaskTimeout(task.id, timeout)
            except ResourceExhaustion as e:
                outcome = ExecutionOutcome.EXHAUSTED
                error = e
            except Exception as e:
                outcome = ExecutionOutcome.FAILED
                error = ExecutionFailure(task.id, str(e) or type(e).__name__)
            finally:
                self.release(task)

        self.stats[outcome.value] += 1
        execution = ExecutionResult(
            task_id=task.id,
            model_id=model_id,
            outcome=outcome,
            started_at=started_at,
            finished_at=time.time(),
            result=result,
            error=error,
            progress=task.progress,
            resource_profile=snapshot,
        )

        log = logger.info if outcome == ExecutionOutcome.COMPLETED else logger.warning
        log(
            "task_execution_finished",
            outcome=outcome.value,
            duration_seconds=round(execution.duration, 3),
            error=str(error) if error else None,
            **context.log_context(),
        )
        return execution
