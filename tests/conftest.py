"""
pytest 配置
"""
import asyncio
import os
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("MONITOR_MOCK_MODE", "true")
os.environ.setdefault("REDIS_ENABLED", "false")


class ControlledSink:
    """
    可控的模型执行端

    release 事件未设置时执行会停在第一个检查点之前；
    errors 中登记的任务 ID 在第一次执行时抛出对应异常。
    """

    def __init__(self, auto_release: bool = True):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if auto_release:
            self.release.set()
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    async def execute(self, task, model_id: str, context) -> Any:
        self.calls.append((task.id, model_id))
        self.started.set()
        await self.release.wait()
        context.checkpoint()
        context.report_progress(0.5)

        error = self.errors.pop(task.id, None)
        if error is not None:
            raise error

        context.checkpoint()
        context.report_progress(1.0)
        return {"task_id": task.id, "model_id": model_id}


@pytest.fixture(scope="session")
def test_settings():
    """测试配置"""
    from core.config import Settings
    return Settings()


@pytest.fixture
def registry():
    """内置模型变体注册表"""
    from core.models import ModelRegistry
    return ModelRegistry()


@pytest.fixture
def probe():
    """模拟 GPU，默认一半显存空闲"""
    from core.scheduler import MockProbe
    mock = MockProbe(memory_total_mb=24000)
    mock.set_free_fraction(0.5)
    return mock


@pytest.fixture
def sink():
    return ControlledSink()


@pytest.fixture
def clock():
    """可手动推进的时钟"""

    class FakeClock:
        def __init__(self, now: float = 1_000_000.0):
            self.now = now

        def __call__(self) -> float:
            return self.now

        def advance(self, seconds: float):
            self.now += seconds

    return FakeClock()


def make_scheduler(
    probe,
    sink,
    registry,
    clock=None,
    starvation_ticks: int = 50,
    reject_unknown_dependencies: bool = False,
    notifier=None,
    **admission_kwargs,
):
    """组装使用内存队列的调度器"""
    from core.callback import TaskNotifier
    from core.scheduler import (
        AdmissionController,
        ContextPool,
        FeedbackIntegrator,
        MemoryTaskQueue,
        PriorityCalculator,
        ResourceMonitor,
        Scheduler,
        TaskExecutor,
        TaskStore,
    )
    import time

    clock = clock or time.time
    store = TaskStore(clock=clock)
    return Scheduler(
        monitor=ResourceMonitor(probe),
        queue=MemoryTaskQueue(store),
        admission=AdmissionController(registry, **admission_kwargs),
        executor=TaskExecutor(sink),
        feedback=FeedbackIntegrator(context_pool=ContextPool()),
        store=store,
        calculator=PriorityCalculator(),
        registry=registry,
        notifier=notifier or TaskNotifier(),
        starvation_ticks=starvation_ticks,
        reject_unknown_dependencies=reject_unknown_dependencies,
        clock=clock,
    )


@pytest.fixture
def scheduler(probe, sink, registry, clock):
    """完整调度器（内存队列、可控执行端、手动时钟）"""
    return make_scheduler(probe, sink, registry, clock=clock)


@pytest.fixture
def make_task():
    """构造任务"""
    from core.scheduler import Task

    def _make(task_id: str, model_id: str = "llama-3-8b", **kwargs) -> Task:
        return Task(id=task_id, model_id=model_id, **kwargs)

    return _make


@pytest.fixture
def scheduler_factory(probe, sink, registry, clock):
    """按参数组装调度器"""

    def _factory(**kwargs):
        kwargs.setdefault("clock", clock)
        return make_scheduler(probe, sink, registry, **kwargs)

    return _factory
