"""
任务生命周期管理

处理任务状态转换和验证

    queued -> runnable -> running -> completed | failed | cancelled
    runnable -> degraded -> runnable          （换用较小模型变体）
    runnable -> degraded -> completed | ...   （拆分为分块，父任务随分块结束）
    running -> degraded -> runnable           （运行中资源耗尽，剩余部分重新入队）
    queued | runnable -> degraded             （负载再平衡时预先降级）
"""
from enum import Enum
from typing import Optional, Set, Dict, Any
from dataclasses import dataclass
import time

import structlog

from core.errors import InvalidStateTransition

logger = structlog.get_logger(__name__)


class TaskState(str, Enum):
    """任务状态"""
    QUEUED = "queued"         # 已入队（依赖未满足或尚未检查）
    RUNNABLE = "runnable"     # 依赖已全部完成，等待准入
    RUNNING = "running"       # 独占 GPU 执行中
    DEGRADED = "degraded"     # 已降级（换变体 / 分块 / 预先降级）
    COMPLETED = "completed"   # 成功完成
    FAILED = "failed"         # 失败（含超时、饥饿、依赖无法满足）
    CANCELLED = "cancelled"   # 已取消


@dataclass
class TaskStateTransition:
    """状态转换记录"""
    from_state: TaskState
    to_state: TaskState
    timestamp: float
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


class TaskLifecycle:
    """
    任务生命周期管理器

    负责：
    - 状态转换验证
    - 状态转换记录
    - 可取消状态检查
    """

    # 有效的状态转换
    VALID_TRANSITIONS: Dict[TaskState, Set[TaskState]] = {
        TaskState.QUEUED: {TaskState.RUNNABLE, TaskState.DEGRADED, TaskState.CANCELLED, TaskState.FAILED},
        TaskState.RUNNABLE: {TaskState.RUNNING, TaskState.DEGRADED, TaskState.CANCELLED, TaskState.FAILED},
        TaskState.RUNNING: {TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED, TaskState.DEGRADED},
        TaskState.DEGRADED: {TaskState.RUNNABLE, TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED},
        TaskState.COMPLETED: set(),  # 终态
        TaskState.FAILED: set(),     # 终态
        TaskState.CANCELLED: set(),  # 终态
    }

    # 可取消的状态
    CANCELLABLE_STATES: Set[TaskState] = {
        TaskState.QUEUED,
        TaskState.RUNNABLE,
        TaskState.RUNNING,
        TaskState.DEGRADED,
    }

    # 终止状态
    TERMINAL_STATES: Set[TaskState] = {
        TaskState.COMPLETED,
        TaskState.FAILED,
        TaskState.CANCELLED,
    }

    # 在队列中等待的状态
    WAITING_STATES: Set[TaskState] = {
        TaskState.QUEUED,
        TaskState.RUNNABLE,
        TaskState.DEGRADED,
    }

    @classmethod
    def can_transition(cls, from_state: TaskState, to_state: TaskState) -> bool:
        """检查状态转换是否有效"""
        valid_targets = cls.VALID_TRANSITIONS.get(from_state, set())
        return to_state in valid_targets

    @classmethod
    def validate_transition(
        cls,
        from_state: TaskState,
        to_state: TaskState,
        raise_error: bool = True
    ) -> bool:
        """
        验证状态转换

        Raises:
            InvalidStateTransition: 如果转换无效且 raise_error=True
        """
        if cls.can_transition(from_state, to_state):
            return True

        if raise_error:
            raise InvalidStateTransition(from_state.value, to_state.value)
        return False

    @classmethod
    def can_cancel(cls, state: TaskState) -> bool:
        """检查任务是否可取消"""
        return state in cls.CANCELLABLE_STATES

    @classmethod
    def is_terminal(cls, state: TaskState) -> bool:
        """检查是否为终止状态"""
        return state in cls.TERMINAL_STATES

    @classmethod
    def is_waiting(cls, state: TaskState) -> bool:
        return state in cls.WAITING_STATES

    @classmethod
    def create_transition(
        cls,
        from_state: TaskState,
        to_state: TaskState,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        validate: bool = True,
        task_id: Optional[str] = None,
    ) -> TaskStateTransition:
        """
        创建状态转换记录

        Args:
            from_state: 当前状态
            to_state: 目标状态
            reason: 转换原因
            metadata: 附加元数据
            validate: 是否验证转换有效性
            task_id: 任务 ID（仅用于日志）
        """
        if validate:
            cls.validate_transition(from_state, to_state)

        transition = TaskStateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=time.time(),
            reason=reason,
            metadata=metadata
        )

        logger.info(
            "task_state_transition",
            task_id=task_id,
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason
        )

        return transition

    @classmethod
    def get_next_states(cls, state: TaskState) -> Set[TaskState]:
        """获取可能的下一个状态"""
        return cls.VALID_TRANSITIONS.get(state, set())


class TaskTimeoutManager:
    """
    任务超时管理器

    任务未声明超时则不设超时；声明的超时不得超过 MAX_TIMEOUT。
    """

    # 最大允许超时
    MAX_TIMEOUT = 86400  # 24 小时

    @classmethod
    def get_timeout(
        cls,
        custom_timeout: Optional[float] = None,
        max_timeout: Optional[float] = None,
    ) -> Optional[float]:
        """获取任务超时时间（秒），None 表示不限"""
        if custom_timeout is None:
            return None
        return min(custom_timeout, max_timeout or cls.MAX_TIMEOUT)

    @classmethod
    def is_timed_out(
        cls,
        started_at: float,
        custom_timeout: Optional[float] = None,
        now: Optional[float] = None,
    ) -> bool:
        """检查任务是否超时"""
        timeout = cls.get_timeout(custom_timeout)
        if timeout is None:
            return False
        elapsed = (now or time.time()) - started_at
        return elapsed > timeout

    @classmethod
    def time_remaining(
        cls,
        started_at: float,
        custom_timeout: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Optional[float]:
        """获取剩余时间（秒）"""
        timeout = cls.get_timeout(custom_timeout)
        if timeout is None:
            return None
        elapsed = (now or time.time()) - started_at
        return max(0, timeout - elapsed)
