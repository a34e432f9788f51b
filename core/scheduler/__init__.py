"""
专用 GPU 调度器模块

资源监控 -> 准入控制 <-> 任务队列 -> 执行器 -> 反馈整合 -> 优先级计算（下一周期）
"""
from .admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionOutcome,
    DegradationStrategy,
    FallbackKind,
    FallbackOption,
)
from .executor import (
    ExecutionContext,
    ExecutionOutcome,
    ExecutionResult,
    ModelExecutionSink,
    SimulatedExecutionSink,
    TaskExecutor,
)
from .factory import build_scheduler, create_queue, create_redis_client
from .feedback import ContextPool, FeedbackIntegrator, FeedbackRecord, FeedbackSource
from .priority import ComplexityDirection, PriorityCalculator, PriorityFactors, PriorityWeights
from .priority_queue import BaseTaskQueue, MemoryTaskQueue, RedisTaskQueue
from .resource_monitor import (
    MockProbe,
    NvmlProbe,
    PredictedSnapshot,
    ResourceMonitor,
    ResourceProbe,
    ResourceSnapshot,
    create_resource_monitor,
)
from .scheduler import Scheduler, ScheduleResult, TaskStatus
from .store import Arena, TaskStore
from .task import Task, TaskError, new_task_id
from .task_lifecycle import TaskLifecycle, TaskState, TaskStateTransition, TaskTimeoutManager

__all__ = [
    # 资源监控
    "ResourceMonitor",
    "ResourceSnapshot",
    "PredictedSnapshot",
    "ResourceProbe",
    "NvmlProbe",
    "MockProbe",
    "create_resource_monitor",
    # 优先级
    "PriorityCalculator",
    "PriorityWeights",
    "PriorityFactors",
    "ComplexityDirection",
    # 队列
    "BaseTaskQueue",
    "MemoryTaskQueue",
    "RedisTaskQueue",
    # 准入与降级
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionOutcome",
    "DegradationStrategy",
    "FallbackKind",
    "FallbackOption",
    # 执行
    "TaskExecutor",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionOutcome",
    "ModelExecutionSink",
    "SimulatedExecutionSink",
    # 反馈
    "FeedbackIntegrator",
    "FeedbackRecord",
    "FeedbackSource",
    "ContextPool",
    # 存储
    "Arena",
    "TaskStore",
    # 任务
    "Task",
    "TaskError",
    "new_task_id",
    "TaskLifecycle",
    "TaskState",
    "TaskStateTransition",
    "TaskTimeoutManager",
    # 调度器
    "Scheduler",
    "ScheduleResult",
    "TaskStatus",
    "build_scheduler",
    "create_queue",
    "create_redis_client",
]
