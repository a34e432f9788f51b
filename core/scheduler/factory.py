"""
调度器组装

按配置构建一个进程内的完整调度器实例。所有组件显式创建并注入，
不使用模块级单例。
"""
from pathlib import Path
from typing import Optional

import structlog
from redis import Redis

from core.callback.webhook import TaskNotifier
from core.config import Settings
from core.models.registry import ModelRegistry
from .admission import AdmissionController
from .executor import ModelExecutionSink, SimulatedExecutionSink, TaskExecutor
from .feedback import ContextPool, FeedbackIntegrator
from .priority import PriorityCalculator, PriorityWeights
from .priority_queue import BaseTaskQueue, MemoryTaskQueue, RedisTaskQueue
from .resource_monitor import ResourceMonitor, ResourceProbe, create_resource_monitor
from .scheduler import Scheduler
from .store import TaskStore

logger = structlog.get_logger(__name__)


def create_redis_client(settings: Settings) -> Optional[Redis]:
    """
    创建 Redis 客户端

    未启用或连接失败时返回 None，调用方回退到内存队列。
    """
    if not settings.redis.enabled:
        return None
    try:
        client = Redis.from_url(settings.redis.url, decode_responses=True)
        client.ping()
    except Exception as e:
        logger.warning("redis_unavailable", url=settings.redis.url, error=str(e))
        return None
    return client


def create_queue(settings: Settings, store: TaskStore, redis_client: Optional[Redis] = None) -> BaseTaskQueue:
    """创建任务队列（有 Redis 时使用 Sorted Set 后端）"""
    options = {
        "rebalance_threshold": settings.queue.rebalance_threshold,
        "rebalance_priority_floor": settings.queue.rebalance_priority_floor,
    }
    if redis_client is not None:
        return RedisTaskQueue(redis_client, store, key_prefix=settings.redis.key_prefix, **options)
    return MemoryTaskQueue(store, **options)


def build_scheduler(
    settings: Settings,
    redis_client: Optional[Redis] = None,
    probe: Optional[ResourceProbe] = None,
    sink: Optional[ModelExecutionSink] = None,
    registry: Optional[ModelRegistry] = None,
    notifier: Optional[TaskNotifier] = None,
) -> Scheduler:
    """
    构建调度器

    Args:
        settings: 应用配置
        redis_client: Redis 客户端（None 时使用内存队列）
        probe: 资源探测器（None 时按配置选择 NVML 或 mock）
        sink: 模型执行端（None 时使用模拟执行端）
        registry: 模型变体注册表
        notifier: 事件通知
    """
    if probe is not None:
        monitor = ResourceMonitor(
            probe,
            history_size=settings.monitor.history_size,
            forecast_horizon_scale=settings.monitor.forecast_horizon_scale,
        )
    else:
        monitor = create_resource_monitor(
            device_index=settings.monitor.device_index,
            mock_mode=settings.monitor.mock_mode,
            mock_memory_total_mb=settings.monitor.mock_memory_total_mb,
            history_size=settings.monitor.history_size,
            forecast_horizon_scale=settings.monitor.forecast_horizon_scale,
        )

    if registry is None:
        yaml_path = Path(settings.models_yaml_path) if settings.models_yaml_path else None
        registry = ModelRegistry(yaml_path)

    store = TaskStore(
        retention_seconds=settings.store.retention_seconds,
        min_access_count=settings.store.min_access_count,
        max_tasks=settings.store.max_tasks,
    )

    feedback = FeedbackIntegrator(
        window_size=settings.feedback.window_size,
        window_seconds=settings.feedback.window_seconds,
        batch_size=settings.feedback.batch_size,
        flush_interval=settings.feedback.flush_interval,
        context_pool=ContextPool(
            max_age=settings.feedback.context_max_age,
            min_hits=settings.feedback.context_min_hits,
            capacity=settings.feedback.context_pool_size,
        ),
    )

    executor = TaskExecutor(
        sink or SimulatedExecutionSink(seconds_per_unit=settings.executor.simulated_seconds_per_unit),
        max_timeout=settings.executor.max_timeout,
    )

    scheduler = Scheduler(
        monitor=monitor,
        queue=create_queue(settings, store, redis_client),
        admission=AdmissionController.from_settings(settings.admission, registry),
        executor=executor,
        feedback=feedback,
        store=store,
        calculator=PriorityCalculator(PriorityWeights.from_settings(settings.priority)),
        registry=registry,
        notifier=notifier or TaskNotifier.from_settings(settings.webhook),
        starvation_ticks=settings.admission.starvation_ticks,
        reject_unknown_dependencies=settings.admission.reject_unknown_dependencies,
        forecast_horizon=settings.monitor.forecast_horizon,
        poll_interval_ms=settings.tick_interval_ms,
    )

    logger.info(
        "scheduler_built",
        queue_backend=type(scheduler.queue).__name__,
        mock_mode=monitor.mock_mode,
        n_models=len(registry.get_all()),
    )
    return scheduler
