"""
任务服务层

处理任务相关的业务逻辑，API 路由只与本层交互
"""
from typing import Optional, Dict, Any, List, Tuple

import structlog

from core.errors import SchedulerError
from core.scheduler import (
    Scheduler,
    Task,
    TaskLifecycle,
    TaskState,
    TaskStatus,
)

logger = structlog.get_logger(__name__)


class TaskService:
    """任务服务"""

    # 没有历史执行数据时的单任务耗时估计（秒）
    DEFAULT_TASK_SECONDS = 30.0

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler

    def submit_task(
        self,
        model: str,
        payload: Any = None,
        base_priority: float = 0.0,
        resource_intensity: float = 0.1,
        quality_requirement: float = 0.8,
        deadline: Optional[float] = None,
        dependencies: Optional[List[str]] = None,
        category: str = "general",
        context_id: Optional[str] = None,
        timeout: Optional[float] = None,
        callback_url: Optional[str] = None,
        callback_events: Optional[List[str]] = None,
        task_id: Optional[str] = None,
    ) -> Task:
        """
        提交任务

        1. 校验模型与依赖
        2. 写入任务存储并加入优先级队列
        3. 返回任务对象（调度异步进行）
        """
        submitted_id = self.scheduler.submit(
            model_id=model,
            payload=payload,
            base_priority=base_priority,
            resource_intensity=resource_intensity,
            quality_requirement=quality_requirement,
            deadline=deadline,
            dependencies=dependencies or (),
            category=category,
            context_id=context_id,
            timeout=timeout,
            callback_url=callback_url,
            callback_events=callback_events,
            task_id=task_id,
        )
        return self.scheduler.get_task(submitted_id)

    def submit_batch(self, tasks_data: List[Dict[str, Any]]) -> Tuple[List[Task], List[Dict[str, Any]]]:
        """
        批量提交任务

        Returns:
            (成功的任务列表, 失败详情列表)
        """
        successful_tasks = []
        errors = []

        for i, data in enumerate(tasks_data):
            try:
                successful_tasks.append(self.submit_task(**data))
            except SchedulerError as e:
                errors.append({
                    "index": i,
                    "cause": e.cause,
                    "error": str(e),
                })
                logger.warning("batch_task_failed", index=i, error=str(e))

        return successful_tasks, errors

    def get_task(self, task_id: str) -> Task:
        """获取任务详情"""
        return self.scheduler.get_task(task_id)

    def get_status(self, task_id: str) -> TaskStatus:
        """获取任务状态及队列位置"""
        return self.scheduler.status(task_id)

    def get_task_result(self, task_id: str) -> Task:
        """获取任务结果"""
        task = self.get_task(task_id)

        if not task.is_terminal:
            raise ValueError(f"Task {task_id} is not finished yet")

        return task

    def cancel_task(self, task_id: str) -> TaskStatus:
        """
        取消任务

        排队中的任务立即取消；运行中的任务在下一个检查点取消。
        """
        task = self.get_task(task_id)
        previous = task.state

        if not TaskLifecycle.can_cancel(previous):
            raise ValueError(f"Cannot cancel task in {previous.value} state")

        self.scheduler.cancel(task_id)
        logger.info("task_cancel_accepted", task_id=task_id, previous_state=previous.value)
        return self.scheduler.status(task_id)

    def list_tasks(
        self,
        page: int = 1,
        page_size: int = 20,
        state: Optional[str] = None,
        category: Optional[str] = None,
        model: Optional[str] = None,
        include_chunks: bool = False,
    ) -> Tuple[List[Task], int]:
        """获取任务列表"""
        state_enum = TaskState(state) if state else None
        return self.scheduler.list_tasks(
            state=state_enum,
            category=category,
            model_id=model,
            include_chunks=include_chunks,
            limit=page_size,
            offset=(page - 1) * page_size,
        )

    def record_feedback(
        self,
        task_id: str,
        rating: float,
        quality: Optional[float] = None,
        latency: Optional[float] = None,
    ) -> Dict[str, Any]:
        """记录用户反馈"""
        return self.scheduler.record_feedback(task_id, rating, quality=quality, latency=latency).to_dict()

    def estimate_wait_time(self, position: Optional[int]) -> Optional[float]:
        """按最近完成任务的平均耗时估算等待时间（秒）"""
        if position is None:
            return None

        durations = [
            t.completed_at - t.started_at
            for t in self.scheduler.store.all()
            if t.state == TaskState.COMPLETED and t.started_at and t.completed_at
        ]
        average = sum(durations) / len(durations) if durations else self.DEFAULT_TASK_SECONDS

        current = self.scheduler.running_task()
        return round((position + (1 if current else 0)) * average, 1)

    def get_stats(self) -> Dict[str, Any]:
        """获取任务统计"""
        by_state: Dict[str, int] = {}
        for task in self.scheduler.store.all():
            by_state[task.state.value] = by_state.get(task.state.value, 0) + 1

        return {
            "by_state": by_state,
            "queue_size": self.scheduler.queue.size(),
            "scheduler": self.scheduler.stats,
        }
