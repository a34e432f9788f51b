"""
调度器错误定义

错误分类:
- 结构性错误（重复 ID、依赖缺失）在提交时同步拒绝
- 资源类错误通过降级在本地恢复
- 执行/超时错误对该任务是终态，不影响其他排队任务
"""
from typing import Any, Dict, Optional


class SchedulerError(Exception):
    """调度器错误基类"""

    # 错误原因标识，写入任务状态
    cause = "scheduler_error"
    retriable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class DuplicateTaskError(SchedulerError):
    """任务 ID 冲突"""
    cause = "duplicate_task"

    def __init__(self, task_id: str):
        super().__init__(f"任务 {task_id} 已存在", {"task_id": task_id})
        self.task_id = task_id


class TaskNotFoundError(SchedulerError):
    """任务未找到"""
    cause = "task_not_found"

    def __init__(self, task_id: str):
        super().__init__(f"任务 {task_id} 未找到", {"task_id": task_id})
        self.task_id = task_id


class ModelNotFoundError(SchedulerError):
    """模型未找到"""
    cause = "model_not_found"

    def __init__(self, model_id: str):
        super().__init__(f"模型 {model_id} 未找到", {"model_id": model_id})
        self.model_id = model_id


class DependencyUnresolvedError(SchedulerError):
    """依赖无法满足（目标不存在或以非完成状态结束）"""
    cause = "dependency_unresolved"

    def __init__(self, task_id: str, dependency_id: str, reason: str = "missing"):
        super().__init__(
            f"任务 {task_id} 的依赖 {dependency_id} 无法满足: {reason}",
            {"task_id": task_id, "dependency_id": dependency_id, "reason": reason},
        )
        self.task_id = task_id
        self.dependency_id = dependency_id
        self.reason = reason


class ResourceExhaustion(SchedulerError):
    """
    GPU 资源耗尽

    由模型执行端在运行中抛出，completed_fraction 表示已完成的比例，
    调度器据此对剩余部分做追溯降级。
    """
    cause = "resource_exhaustion"
    retriable = True

    def __init__(self, message: str = "GPU 显存不足", completed_fraction: float = 0.0, **details):
        super().__init__(message, details)
        self.completed_fraction = max(0.0, min(completed_fraction, 1.0))


class SchedulingStarvation(SchedulerError):
    """任务在连续多个调度周期内都未能获准运行"""
    cause = "scheduling_starvation"
    retriable = True

    def __init__(self, task_id: str, ticks: int):
        super().__init__(
            f"任务 {task_id} 在 {ticks} 个调度周期内未能获准运行",
            {"task_id": task_id, "ticks": ticks},
        )
        self.task_id = task_id
        self.ticks = ticks


class ExecutionFailure(SchedulerError):
    """模型执行失败（终态）"""
    cause = "execution_failure"

    def __init__(self, task_id: str, reason: str):
        super().__init__(f"任务 {task_id} 执行失败: {reason}", {"task_id": task_id})
        self.task_id = task_id
        self.reason = reason


class TaskTimeout(SchedulerError):
    """任务执行超时（该次尝试终态，可由调用方重新提交）"""
    cause = "timeout"
    retriable = True

    def __init__(self, task_id: str, timeout: float):
        super().__init__(
            f"任务 {task_id} 执行超过 {timeout} 秒",
            {"task_id": task_id, "timeout": timeout},
        )
        self.task_id = task_id
        self.timeout = timeout


class InvalidStateTransition(SchedulerError, ValueError):
    """无效的状态转换"""
    cause = "invalid_transition"

    def __init__(self, from_state: str, to_state: str):
        super().__init__(f"Invalid state transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class CancellationRequested(SchedulerError):
    """执行检查点发现取消请求"""
    cause = "cancelled"

    def __init__(self, task_id: str):
        super().__init__(f"任务 {task_id} 已请求取消", {"task_id": task_id})
        self.task_id = task_id
