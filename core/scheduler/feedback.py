"""
反馈与上下文整合

- 反馈记录先进入缓冲区，达到批量大小或超过刷新间隔时折叠进滚动窗口
- 滚动窗口保留最近 window_size 条、window_seconds 内的记录，
  以不可变元组整体替换发布，读取方无需加锁
- 上下文池记录可复用的上下文，命中时产生 context 类型的反馈
"""
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional, Tuple
import asyncio
import threading
import time

import structlog

from .resource_monitor import ResourceSnapshot
from .store import Arena
from .task import Task

logger = structlog.get_logger(__name__)


class FeedbackSource(str, Enum):
    """反馈来源"""
    EXECUTION = "execution"
    USER = "user"
    CONTEXT = "context"


@dataclass(frozen=True)
class FeedbackRecord:
    """反馈记录（不可变）"""
    task_id: str
    rating: float                       # 1-5
    category: str = "general"
    timestamp: float = field(default_factory=time.time)
    source: FeedbackSource = FeedbackSource.USER
    resource_profile: Optional[ResourceSnapshot] = None
    quality: Optional[float] = None
    latency: Optional[float] = None

    def __post_init__(self):
        if not 1 <= self.rating <= 5:
            raise ValueError(f"rating must be between 1 and 5, got {self.rating}")

    @property
    def centered_rating(self) -> float:
        """评分映射到 [-1, 1]"""
        return (self.rating - 3) / 2

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "rating": self.rating,
            "category": self.category,
            "timestamp": self.timestamp,
            "source": self.source.value,
            "quality": self.quality,
            "latency": self.latency,
        }


class ContextPool:
    """
    可复用上下文池

    上下文按空闲时间和命中次数淘汰：超过 max_age 未使用且命中次数
    不足 min_hits 的上下文会被移除。
    """

    def __init__(self, max_age: float = 3600.0, min_hits: int = 2, capacity: Optional[int] = 256):
        self._arena: Arena[str] = Arena(
            max_age=max_age,
            min_access_count=min_hits,
            capacity=capacity,
            name="contexts",
        )
        self.hits = 0
        self.misses = 0

    def acquire(self, context_id: str, now: Optional[float] = None) -> bool:
        """
        使用上下文

        Returns:
            是否命中已缓存的上下文
        """
        if self._arena.get(context_id, now=now) is not None:
            self.hits += 1
            return True
        self._arena.put(context_id, context_id, now=now)
        self.misses += 1
        return False

    def evict(self, now: Optional[float] = None) -> List[str]:
        return self._arena.evict(now)

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._arena

    def __len__(self) -> int:
        return len(self._arena)

    def get_summary(self) -> dict:
        return {"size": len(self), "hits": self.hits, "misses": self.misses}


def rating_from_quality(quality: float) -> float:
    """质量 0-1 线性映射为评分 1-5"""
    return 1.0 + 4.0 * max(0.0, min(quality, 1.0))


class FeedbackIntegrator:
    """
    反馈整合器

    Args:
        window_size: 窗口最大记录数
        window_seconds: 窗口时间跨度（秒）
        batch_size: 缓冲区达到该数量时折叠
        flush_interval: 距上次折叠超过该时间（秒）时折叠
        context_pool: 上下文池
    """

    def __init__(
        self,
        window_size: int = 1000,
        window_seconds: float = 86400.0,
        batch_size: int = 50,
        flush_interval: float = 10.0,
        context_pool: Optional[ContextPool] = None,
    ):
        self.window_size = window_size
        self.window_seconds = window_seconds
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.context_pool = context_pool or ContextPool()

        self._buffer: List[FeedbackRecord] = []
        self._records: Deque[FeedbackRecord] = deque(maxlen=window_size)
        self._window: Tuple[FeedbackRecord, ...] = ()
        self._last_flush = time.time()
        self._lock = threading.Lock()
        self._running = False

        self.stats = {
            "recorded": 0,
            "flushes": 0,
        }

    def window(self) -> Tuple[FeedbackRecord, ...]:
        """当前发布的反馈窗口"""
        return self._window

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(self, record: FeedbackRecord) -> FeedbackRecord:
        """写入一条反馈"""
        with self._lock:
            self._buffer.append(record)
            self.stats["recorded"] += 1
        self.maybe_flush(record.timestamp)
        return record

    def record_rating(
        self,
        task_id: str,
        rating: float,
        category: str = "general",
        quality: Optional[float] = None,
        latency: Optional[float] = None,
        now: Optional[float] = None,
    ) -> FeedbackRecord:
        """记录用户评分"""
        return self.record(FeedbackRecord(
            task_id=task_id,
            rating=rating,
            category=category,
            timestamp=now if now is not None else time.time(),
            source=FeedbackSource.USER,
            quality=quality,
            latency=latency,
        ))

    def record_execution(
        self,
        task: Task,
        quality: float,
        latency: Optional[float] = None,
        resource_profile: Optional[ResourceSnapshot] = None,
        success: bool = True,
        now: Optional[float] = None,
    ) -> FeedbackRecord:
        """记录执行结果（成功按质量评分，失败为最低分）"""
        rating = rating_from_quality(quality) if success else 1.0
        return self.record(FeedbackRecord(
            task_id=task.id,
            rating=rating,
            category=task.category,
            timestamp=now if now is not None else time.time(),
            source=FeedbackSource.EXECUTION,
            resource_profile=resource_profile,
            quality=quality if success else None,
            latency=latency,
        ))

    def record_context_reuse(self, task: Task, now: Optional[float] = None) -> Optional[FeedbackRecord]:
        """
        登记任务上下文

        Returns:
            命中已缓存上下文时返回生成的反馈记录，否则 None
        """
        if not task.context_id:
            return None
        if not self.context_pool.acquire(task.context_id, now=now):
            return None

        logger.debug("context_reused", task_id=task.id, context_id=task.context_id)
        return self.record(FeedbackRecord(
            task_id=task.id,
            rating=4.0,
            category=task.category,
            timestamp=now if now is not None else time.time(),
            source=FeedbackSource.CONTEXT,
        ))

    def should_flush(self, now: Optional[float] = None) -> bool:
        now = now if now is not None else time.time()
        if now - self._last_flush >= self.flush_interval:
            # 缓冲区为空时也折叠，超龄记录才会移出窗口
            return bool(self._buffer or self._records)
        return len(self._buffer) >= self.batch_size

    def maybe_flush(self, now: Optional[float] = None) -> int:
        if self.should_flush(now):
            return self.flush(now)
        return 0

    def flush(self, now: Optional[float] = None) -> int:
        """
        折叠缓冲区并发布新窗口

        Returns:
            折叠的记录数
        """
        now = now if now is not None else time.time()
        with self._lock:
            batch, self._buffer = self._buffer, []
            self._records.extend(batch)

            cutoff = now - self.window_seconds
            while self._records and self._records[0].timestamp < cutoff:
                self._records.popleft()

            self._window = tuple(self._records)
            self._last_flush = now
            self.stats["flushes"] += 1

        if batch:
            logger.debug("feedback_flushed", count=len(batch), window_size=len(self._window))
        return len(batch)

    async def start_flush_loop(self, interval: Optional[float] = None):
        """启动定期折叠循环"""
        if self._running:
            logger.warning("feedback_flush_loop_already_running")
            return

        self._running = True
        interval = interval or self.flush_interval
        logger.info("feedback_flush_loop_started", interval=interval)

        while self._running:
            self.maybe_flush()
            self.context_pool.evict()
            await asyncio.sleep(interval)

    def stop_flush_loop(self):
        self._running = False
        logger.info("feedback_flush_loop_stopped")

    def get_summary(self) -> dict:
        return {
            **self.stats,
            "pending": self.pending,
            "window_size": len(self._window),
            "context_pool": self.context_pool.get_summary(),
        }
