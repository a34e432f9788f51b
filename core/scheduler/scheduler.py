"""
任务调度器

编排资源监控、优先级计算、队列、准入控制、执行器与反馈整合。
每个调度周期（tick）由 asyncio.Lock 串行化；执行在独立的 asyncio 任务中进行，
提交与取消永远不会被执行阻塞。
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
import asyncio
import time

import structlog

from core.callback.webhook import CallbackEvent, TaskNotifier
from core.errors import (
    DependencyUnresolvedError,
    DuplicateTaskError,
    SchedulingStarvation,
    TaskNotFoundError,
)
from core.models.registry import ModelRegistry
from .admission import AdmissionController, AdmissionDecision, AdmissionOutcome, FallbackOption
from .executor import ExecutionOutcome, ExecutionResult, TaskExecutor
from .feedback import FeedbackIntegrator, FeedbackRecord
from .priority import PriorityCalculator
from .priority_queue import BaseTaskQueue
from .resource_monitor import ResourceMonitor, ResourceSnapshot
from .store import TaskStore
from .task import Task, new_task_id
from .task_lifecycle import TaskLifecycle, TaskState

logger = structlog.get_logger(__name__)


@dataclass
class ScheduleResult:
    """单个调度周期的结果"""
    success: bool
    task_id: Optional[str] = None
    model_id: Optional[str] = None
    outcome: Optional[str] = None
    reason: Optional[str] = None
    deferred: List[str] = field(default_factory=list)
    passed_over: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    starved: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class TaskStatus:
    """任务状态视图"""
    task_id: str
    state: TaskState
    model_id: str
    model_variant: Optional[str]
    dynamic_priority: float
    position: Optional[int]
    progress: float
    chunks: List[str]
    parent_id: Optional[str]
    error: Optional[Dict[str, Any]]
    result: Any
    submitted_at: float
    started_at: Optional[float]
    completed_at: Optional[float]

    @classmethod
    def from_task(cls, task: Task, position: Optional[int] = None) -> "TaskStatus":
        return cls(
            task_id=task.id,
            state=task.state,
            model_id=task.model_id,
            model_variant=task.model_variant,
            dynamic_priority=task.dynamic_priority,
            position=position,
            progress=task.progress,
            chunks=list(task.chunks),
            parent_id=task.parent_id,
            error=task.error.to_dict() if task.error else None,
            result=task.result,
            submitted_at=task.submitted_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "state": self.state.value,
            "model_id": self.model_id,
            "model_variant": self.model_variant,
            "dynamic_priority": self.dynamic_priority,
            "position": self.position,
            "progress": self.progress,
            "chunks": self.chunks,
            "parent_id": self.parent_id,
            "error": self.error,
            "result": self.result,
            "submitted_at": self.submitted_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class Scheduler:
    """
    专用 GPU 任务调度器

    功能：
    - 每周期重新计算动态优先级并做负载再平衡
    - 依赖就绪的任务进入 runnable，依赖失败的任务直接失败
    - 按优先级依次准入，每周期最多派发一个任务
    - 显存不足时降级（更小变体或分块），无可行方案时推迟
    - 执行器空闲时累计 starvation_ticks 个周期未被派发（推迟或被越过）的任务以 SchedulingStarvation 失败
    """

    def __init__(
        self,
        monitor: ResourceMonitor,
        queue: BaseTaskQueue,
        admission: AdmissionController,
        executor: TaskExecutor,
        feedback: FeedbackIntegrator,
        store: TaskStore,
        calculator: PriorityCalculator,
        registry: ModelRegistry,
        notifier: Optional[TaskNotifier] = None,
        starvation_ticks: int = 50,
        reject_unknown_dependencies: bool = False,
        forecast_horizon: float = 5.0,
        poll_interval_ms: int = 100,
        evict_every_ticks: int = 100,
        clock=time.time,
    ):
        """
        初始化调度器

        Args:
            monitor: 资源监控器
            queue: 任务队列
            admission: 准入控制器
            executor: 任务执行器
            feedback: 反馈整合器
            store: 任务存储
            calculator: 优先级计算器
            registry: 模型变体注册表
            notifier: 事件通知
            starvation_ticks: 判定饥饿的未派发周期数
            reject_unknown_dependencies: 提交时拒绝未知依赖
            forecast_horizon: 准入时参考的预测时长（秒）
            poll_interval_ms: 调度轮询间隔（毫秒）
        """
        self.monitor = monitor
        self.queue = queue
        self.admission = admission
        self.executor = executor
        self.feedback = feedback
        self.store = store
        self.calculator = calculator
        self.registry = registry
        self.notifier = notifier or TaskNotifier()
        self.starvation_ticks = starvation_ticks
        self.reject_unknown_dependencies = reject_unknown_dependencies
        self.forecast_horizon = forecast_horizon
        self.poll_interval_ms = poll_interval_ms
        self.evict_every_ticks = evict_every_ticks
        self.clock = clock

        self._tick_lock = asyncio.Lock()
        self._execution: Optional[asyncio.Task] = None
        self._running = False

        # 统计
        self.stats = {
            "submitted": 0,
            "ticks": 0,
            "dispatched": 0,
            "deferred": 0,
            "degraded": 0,
            "split": 0,
            "starved": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
        }

    # ---- 提交 ----

    def submit(
        self,
        model_id: str,
        payload: Any = None,
        base_priority: float = 0.0,
        resource_intensity: float = 0.1,
        quality_requirement: float = 0.8,
        deadline: Optional[float] = None,
        dependencies: Iterable[str] = (),
        category: str = "general",
        context_id: Optional[str] = None,
        timeout: Optional[float] = None,
        callback_url: Optional[str] = None,
        callback_events: Optional[List[str]] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """
        提交任务（立即返回，调度异步进行）

        Returns:
            任务 ID

        Raises:
            DuplicateTaskError: 任务 ID 已存在
            ModelNotFoundError: 模型未注册
            DependencyUnresolvedError: 依赖自身、形成环或（严格模式下）依赖不存在
        """
        task_id = task_id or new_task_id()
        if task_id in self.store:
            raise DuplicateTaskError(task_id)

        self.registry.require(model_id)
        dependencies = frozenset(dependencies)
        self._validate_dependencies(task_id, dependencies)

        task = Task(
            id=task_id,
            model_id=model_id,
            payload=payload,
            base_priority=base_priority,
            resource_intensity=resource_intensity,
            quality_requirement=quality_requirement,
            deadline=deadline,
            dependencies=dependencies,
            category=category,
            context_id=context_id,
            timeout=timeout,
            callback_url=callback_url,
            callback_events=callback_events,
            submitted_at=self.clock(),
        )
        self._enqueue(task)
        self.stats["submitted"] += 1

        logger.info(
            "task_submitted",
            task_id=task.id,
            model=model_id,
            base_priority=base_priority,
            resource_intensity=resource_intensity,
            dependencies=sorted(dependencies),
        )
        self._notify(task, CallbackEvent.TASK_SUBMITTED)
        return task.id

    def _validate_dependencies(self, task_id: str, dependencies: frozenset) -> None:
        for dep_id in dependencies:
            if dep_id == task_id:
                raise DependencyUnresolvedError(task_id, dep_id, "self")
            if self.reject_unknown_dependencies and not self.store.known(dep_id):
                raise DependencyUnresolvedError(task_id, dep_id, "missing")

        # 允许前向引用，但新任务不能闭合依赖环
        stack = list(dependencies)
        seen = set()
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            dep = self.store.peek(current)
            if dep is None:
                continue
            if task_id in dep.dependencies:
                raise DependencyUnresolvedError(task_id, current, "cycle")
            stack.extend(dep.dependencies)

    def _enqueue(self, task: Task) -> None:
        task.dynamic_priority = self.calculator.compute_priority(
            task, self.feedback.window(), self.monitor.snapshot(), self.clock()
        )
        self.store.add(task, self.clock())
        self.queue.enqueue(task)

    # ---- 调度周期 ----

    async def tick(self) -> ScheduleResult:
        """
        执行一个调度周期

        Returns:
            ScheduleResult 调度结果
        """
        async with self._tick_lock:
            self.stats["ticks"] += 1
            now = self.clock()
            snapshot = self.monitor.refresh()
            forecast = self.monitor.forecast(self.forecast_horizon)
            window = self.feedback.window()

            result = ScheduleResult(success=False)
            result.failed = self._fail_broken_dependencies()

            for task in self.queue.items():
                priority = self.calculator.compute_priority(task, window, snapshot, now)
                self.queue.reprioritize(task.id, priority)

            for task_id in self.queue.rebalance(snapshot.load):
                self.stats["degraded"] += 1
                result.degraded.append(task_id)
                self._notify(self.store.peek(task_id), CallbackEvent.TASK_DEGRADED, reason="rebalance")

            candidates = self.queue.ready_in_order()
            for task in candidates:
                if task.state == TaskState.QUEUED:
                    task.transition(TaskState.RUNNABLE, reason="dependencies_met")

            if self.stats["ticks"] % self.evict_every_ticks == 0:
                self.store.evict(now)

            if self.executor.busy:
                result.reason = "executor_busy"
                return result
            if not candidates:
                result.reason = "no_ready_task"
                return result

            self._admit(candidates, snapshot, forecast, result)
            self._account_starvation(result)

            if not result.success and result.reason is None:
                result.reason = "all_deferred"
            return result

    def _admit(self, candidates: List[Task], snapshot: ResourceSnapshot, forecast, result: ScheduleResult) -> None:
        """按优先级依次准入，派发至多一个任务"""
        pending = list(candidates)
        while pending:
            task = pending.pop(0)
            decision = self.admission.admit(task, snapshot, forecast)

            if decision.outcome == AdmissionOutcome.DEFER:
                result.deferred.append(task.id)
                self.stats["deferred"] += 1
                continue

            if decision.outcome == AdmissionOutcome.SPLIT:
                chunks = self._split(task, decision.option, reason=decision.reason)
                result.degraded.append(task.id)
                first = chunks[0]
                if self.queue.is_ready(first):
                    first.transition(TaskState.RUNNABLE, reason="dependencies_met")
                    pending.insert(0, first)
                continue

            if decision.outcome == AdmissionOutcome.VARIANT:
                self._apply_variant(task, decision)
                result.degraded.append(task.id)

            self._dispatch(task, snapshot)
            result.success = True
            result.task_id = task.id
            result.model_id = task.model_variant or task.model_id
            result.outcome = decision.outcome.value
            # 未轮到评估的就绪任务本周期被越过
            result.passed_over = [t.id for t in pending]
            return

    def _account_starvation(self, result: ScheduleResult) -> None:
        """推迟与越过计数，超过阈值的任务以饥饿失败"""
        waiting = [(task_id, True) for task_id in result.deferred]
        waiting += [(task_id, False) for task_id in result.passed_over]
        for task_id, deferred in waiting:
            task = self.store.peek(task_id)
            if task is None or task.is_terminal:
                continue
            if deferred:
                task.deferred_ticks += 1
            else:
                task.passed_over_ticks += 1

            if task.waiting_ticks >= self.starvation_ticks:
                self.queue.remove(task.id)
                task.fail(SchedulingStarvation(task.id, task.waiting_ticks))
                self.store.touch(task.id, self.clock())
                self.stats["starved"] += 1
                result.starved.append(task.id)
                logger.warning(
                    "task_starved",
                    task_id=task.id,
                    ticks=task.waiting_ticks,
                    deferred_ticks=task.deferred_ticks,
                    passed_over_ticks=task.passed_over_ticks,
                )
                self._notify(task, CallbackEvent.TASK_STARVED)
                self._on_task_finished(task)

    def _fail_broken_dependencies(self) -> List[str]:
        """依赖以非完成状态结束的任务直接失败（级联至稳定）"""
        failed: List[str] = []
        changed = True
        while changed:
            changed = False
            for task in self.queue.items():
                for dep_id in sorted(task.dependencies):
                    # 已淘汰的依赖按墓碑中的最终状态判断
                    final = self.store.final_state(dep_id)
                    if final is None or final == TaskState.COMPLETED:
                        continue
                    self.queue.remove(task.id)
                    task.fail(DependencyUnresolvedError(task.id, dep_id, final.value))
                    self.store.touch(task.id, self.clock())
                    self.stats["failed"] += 1
                    failed.append(task.id)
                    logger.warning("task_dependency_failed", task_id=task.id, dependency_id=dep_id)
                    self._notify(task, CallbackEvent.TASK_FAILED)
                    self._on_task_finished(task)
                    changed = True
                    break
        return failed

    # ---- 降级 ----

    def _apply_variant(self, task: Task, decision: AdmissionDecision) -> None:
        option = decision.option
        if task.state != TaskState.DEGRADED:
            task.transition(
                TaskState.DEGRADED,
                reason="variant_fallback",
                metadata={"model_variant": option.model_id},
            )
        task.model_variant = option.model_id
        task.preemptively_degraded = False
        self.stats["degraded"] += 1
        logger.info(
            "task_degraded",
            task_id=task.id,
            model=task.model_id,
            model_variant=option.model_id,
            projected_quality=option.projected_quality,
        )
        self._notify(task, CallbackEvent.TASK_DEGRADED, reason=decision.reason, option=option.to_dict())

    def _split(self, task: Task, option: FallbackOption, reason: str) -> List[Task]:
        """父任务进入 degraded，分块任务入队"""
        self.queue.remove(task.id)
        if task.state != TaskState.DEGRADED:
            task.transition(TaskState.DEGRADED, reason="split", metadata={"chunk_count": option.chunk_count})
        task.preemptively_degraded = False

        chunks = self.admission.split_task(task, option)
        task.chunks = [chunk.id for chunk in chunks]
        for chunk in chunks:
            self._enqueue(chunk)

        self.stats["degraded"] += 1
        self.stats["split"] += 1
        self._notify(task, CallbackEvent.TASK_DEGRADED, reason=reason, option=option.to_dict())
        return chunks

    # ---- 执行 ----

    def _dispatch(self, task: Task, snapshot: ResourceSnapshot) -> None:
        """占用执行槽位并启动执行"""
        self.queue.remove(task.id)
        if task.state == TaskState.DEGRADED:
            task.transition(TaskState.RUNNABLE, reason="fallback_selected")

        if not self.executor.reserve(task):
            raise RuntimeError("executor slot is occupied")

        model_id = task.model_variant or task.model_id
        task.transition(TaskState.RUNNING, reason="dispatched", metadata={"model_id": model_id})
        task.started_at = self.clock()
        task.preemptively_degraded = False
        self.stats["dispatched"] += 1

        self.feedback.record_context_reuse(task)
        logger.info(
            "task_scheduled",
            task_id=task.id,
            model=model_id,
            priority=round(task.dynamic_priority, 4),
        )
        self._notify(task, CallbackEvent.TASK_STARTED)
        self._execution = asyncio.create_task(self._execute(task, model_id, snapshot))

    async def _execute(self, task: Task, model_id: str, snapshot: ResourceSnapshot) -> None:
        try:
            execution = await self.executor.run(task, model_id, snapshot)
        except Exception as e:
            self.executor.release(task)
            logger.error("task_execution_error", task_id=task.id, error=str(e), exc_info=True)
            if not task.is_terminal:
                task.fail(e)
                self.stats["failed"] += 1
                self._notify(task, CallbackEvent.TASK_FAILED)
                self.store.touch(task.id, self.clock())
                self._on_task_finished(task)
            return
        self._handle_result(task, execution)

    def _handle_result(self, task: Task, execution: ExecutionResult) -> None:
        """处理执行结果（执行槽位此时已释放）"""
        outcome = execution.outcome
        quality = self._projected_quality(task)

        if outcome == ExecutionOutcome.COMPLETED:
            task.result = execution.result
            task.progress = 1.0
            task.transition(TaskState.COMPLETED, reason="execution_completed")
            self.stats["completed"] += 1
            self.feedback.record_execution(
                task,
                quality=quality,
                latency=execution.duration,
                resource_profile=execution.resource_profile,
            )
            self._notify(task, CallbackEvent.TASK_COMPLETED, duration_seconds=round(execution.duration, 3))

        elif outcome == ExecutionOutcome.CANCELLED:
            task.transition(TaskState.CANCELLED, reason="cancel_checkpoint")
            self.stats["cancelled"] += 1
            self._notify(task, CallbackEvent.TASK_CANCELLED)

        elif outcome == ExecutionOutcome.EXHAUSTED:
            self._recover_exhaustion(task, execution)
            return

        else:
            task.fail(execution.error)
            self.stats["failed"] += 1
            self.feedback.record_execution(
                task,
                quality=quality,
                latency=execution.duration,
                resource_profile=execution.resource_profile,
                success=False,
            )
            event = CallbackEvent.TASK_TIMEOUT if outcome == ExecutionOutcome.TIMEOUT else CallbackEvent.TASK_FAILED
            self._notify(task, event)

        self.store.touch(task.id, self.clock())
        self._on_task_finished(task)

    def _recover_exhaustion(self, task: Task, execution: ExecutionResult) -> None:
        """运行中资源耗尽：追溯降级剩余部分并重新入队"""
        decision = self.admission.degrade_after_exhaustion(
            task, self.monitor.refresh(), execution.completed_fraction
        )
        task.transition(TaskState.DEGRADED, reason="resource_exhaustion")
        task.progress = 0.0
        self.stats["degraded"] += 1

        if decision.outcome == AdmissionOutcome.SPLIT:
            self._split(task, decision.option, reason="resource_exhaustion")
            return

        if decision.outcome == AdmissionOutcome.VARIANT:
            task.model_variant = decision.option.model_id
            self._notify(task, CallbackEvent.TASK_DEGRADED, reason="resource_exhaustion",
                         option=decision.option.to_dict())
        else:
            self._notify(task, CallbackEvent.TASK_DEGRADED, reason="resource_exhaustion")

        task.transition(TaskState.RUNNABLE, reason="requeued")
        self.queue.enqueue(task)

    def _projected_quality(self, task: Task) -> float:
        variant = self.registry.get(task.model_variant or task.model_id)
        return variant.quality if variant else 1.0

    # ---- 分块合并 ----

    def _on_task_finished(self, task: Task) -> None:
        """分块结束时更新父任务"""
        if not task.is_chunk:
            return
        parent = self.store.peek(task.parent_id)
        if parent is None or parent.is_terminal:
            return

        chunks = [self.store.peek(chunk_id) for chunk_id in parent.chunks]
        chunks = [c for c in chunks if c is not None]

        if task.state == TaskState.COMPLETED:
            done = [c for c in chunks if c.state == TaskState.COMPLETED]
            parent.progress = len(done) / len(parent.chunks)
            if len(done) < len(parent.chunks):
                return
            ordered = sorted(done, key=lambda c: c.chunk_index)
            parent.result = {
                "chunks": [c.result for c in ordered],
                "chunk_count": len(ordered),
            }
            parent.progress = 1.0
            parent.transition(TaskState.COMPLETED, reason="chunks_completed")
            self.stats["completed"] += 1
            logger.info("task_chunks_merged", task_id=parent.id, chunk_count=len(ordered))
            self._notify(parent, CallbackEvent.TASK_COMPLETED)
        else:
            for sibling in chunks:
                if sibling is not task:
                    self._cancel_chunk(sibling)
            if task.state == TaskState.CANCELLED:
                parent.transition(TaskState.CANCELLED, reason="chunk_cancelled")
                self.stats["cancelled"] += 1
                self._notify(parent, CallbackEvent.TASK_CANCELLED)
            else:
                parent.error = task.error
                parent.transition(TaskState.FAILED, reason="chunk_failed")
                self.stats["failed"] += 1
                self._notify(parent, CallbackEvent.TASK_FAILED)

        self.store.touch(parent.id, self.clock())
        self._on_task_finished(parent)

    def _cancel_chunk(self, chunk: Task) -> None:
        if chunk.is_terminal:
            return
        if chunk.state == TaskState.RUNNING:
            chunk.cancel_requested = True
            return
        for grandchild_id in chunk.chunks:
            grandchild = self.store.peek(grandchild_id)
            if grandchild is not None:
                self._cancel_chunk(grandchild)
        self.queue.remove(chunk.id)
        chunk.transition(TaskState.CANCELLED, reason="sibling_finished")
        self.store.touch(chunk.id, self.clock())

    # ---- 查询与控制 ----

    def _require(self, task_id: str) -> Task:
        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def cancel(self, task_id: str) -> bool:
        """
        取消任务

        运行中的任务只设置取消标记，在执行器下一个检查点生效。

        Returns:
            是否接受了取消请求（已结束的任务返回 False）

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = self._require(task_id)
        if not TaskLifecycle.can_cancel(task.state):
            return False

        if task.state == TaskState.RUNNING:
            task.cancel_requested = True
            logger.info("task_cancel_requested", task_id=task.id)
            return True

        for chunk_id in task.chunks:
            chunk = self.store.peek(chunk_id)
            if chunk is not None:
                self._cancel_chunk(chunk)

        self.queue.remove(task.id)
        task.cancel_requested = True
        task.transition(TaskState.CANCELLED, reason="user_cancelled")
        self.store.touch(task.id, self.clock())
        self.stats["cancelled"] += 1
        logger.info("task_cancelled", task_id=task.id)
        self._notify(task, CallbackEvent.TASK_CANCELLED)
        self._on_task_finished(task)
        return True

    def get_task(self, task_id: str) -> Task:
        """获取任务对象"""
        return self._require(task_id)

    def status(self, task_id: str) -> TaskStatus:
        """
        查询任务状态

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = self._require(task_id)
        return TaskStatus.from_task(task, self.queue.position(task_id))

    def list_tasks(
        self,
        state: Optional[TaskState] = None,
        category: Optional[str] = None,
        model_id: Optional[str] = None,
        include_chunks: bool = True,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[Task], int]:
        """
        列出任务

        Returns:
            (任务列表, 总数)，按提交时间倒序
        """
        tasks = self.store.all()
        if state is not None:
            tasks = [t for t in tasks if t.state == state]
        if category:
            tasks = [t for t in tasks if t.category == category]
        if model_id:
            tasks = [t for t in tasks if t.model_id == model_id]
        if not include_chunks:
            tasks = [t for t in tasks if not t.is_chunk]

        tasks.sort(key=lambda t: (t.submitted_at, t.sequence), reverse=True)
        return tasks[offset:offset + limit], len(tasks)

    def record_feedback(
        self,
        task_id: str,
        rating: float,
        quality: Optional[float] = None,
        latency: Optional[float] = None,
    ) -> FeedbackRecord:
        """
        记录用户对任务的反馈

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = self._require(task_id)
        record = self.feedback.record_rating(
            task.id,
            rating,
            category=task.category,
            quality=quality,
            latency=latency,
            now=self.clock(),
        )
        logger.info("feedback_recorded", task_id=task.id, rating=rating, category=task.category)
        return record

    def waiting_tasks(self) -> List[Task]:
        return [t for t in self.store.all() if TaskLifecycle.is_waiting(t.state) and not t.is_split]

    def running_task(self) -> Optional[Task]:
        return self.executor.current

    async def wait_idle(self) -> None:
        """等待当前执行结束"""
        execution = self._execution
        if execution is not None and not execution.done():
            await asyncio.shield(execution)

    async def run_until_idle(self, max_ticks: int = 1000) -> int:
        """
        连续调度直到没有可推进的任务

        Returns:
            执行的周期数
        """
        for i in range(max_ticks):
            result = await self.tick()
            await self.wait_idle()
            if not result.success and not self.executor.busy and not self.queue.ready_in_order():
                return i + 1
        return max_ticks

    async def start_scheduling_loop(self):
        """启动调度循环"""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        self._running = True
        logger.info("scheduler_started", poll_interval_ms=self.poll_interval_ms)

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("scheduler_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.poll_interval_ms / 1000)

    def stop_scheduling_loop(self):
        """停止调度循环"""
        self._running = False
        logger.info("scheduler_stopped")

    async def shutdown(self, timeout: float = 5.0):
        """停止调度并等待（或取消）正在执行的任务"""
        self.stop_scheduling_loop()
        current = self.executor.current
        if current is not None:
            current.cancel_requested = True
        execution = self._execution
        if execution is not None and not execution.done():
            done, _ = await asyncio.wait({execution}, timeout=timeout)
            if not done:
                execution.cancel()
        await self.notifier.drain()

    def get_stats(self) -> dict:
        """获取调度统计"""
        current = self.executor.current
        return {
            **self.stats,
            "queue_size": self.queue.size(),
            "store_size": len(self.store),
            "executor": {
                "busy": self.executor.busy,
                "current_task": current.id if current else None,
                **self.executor.stats,
            },
            "monitor": self.monitor.get_summary(),
            "feedback": self.feedback.get_summary(),
            "notifications": self.notifier.get_stats(),
        }

    def get_queue_status(self, limit: int = 20) -> dict:
        """获取队列状态"""
        now = self.clock()
        tasks = self.queue.items()
        return {
            "size": len(tasks),
            "ready": sum(1 for t in tasks if self.queue.is_ready(t)),
            "running": self.executor.current.id if self.executor.current else None,
            "tasks": [
                {
                    "task_id": t.id,
                    "state": t.state.value,
                    "priority": round(t.dynamic_priority, 4),
                    "position": position,
                    "ready": self.queue.is_ready(t),
                    "deferred_ticks": t.deferred_ticks,
                    "passed_over_ticks": t.passed_over_ticks,
                    "wait_time_seconds": round(now - t.submitted_at, 3),
                }
                for position, t in enumerate(tasks[:limit])
            ],
        }

    def _notify(self, task: Optional[Task], event: CallbackEvent, **extra) -> None:
        if task is None:
            return
        payload = {**task.to_dict(), **extra}
        self.notifier.notify(
            task.id,
            event,
            payload,
            callback_url=task.callback_url,
            callback_events=task.callback_events,
        )
