"""
按 ID 存储的对象池

所有任务（包括已结束的任务）都保存在这里，供状态查询与依赖检查使用。
淘汰策略显式化：超过最大空闲时间且访问次数不足的条目才会被淘汰，
容量超限时再按最久未访问淘汰，只有 evictable 判定为真的条目可被淘汰。
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar
import threading
import time

import structlog

from .task import Task, TaskState

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class ArenaEntry(Generic[T]):
    """池中的条目"""
    value: T
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)
    access_count: int = 0

    def touch(self, now: Optional[float] = None):
        """更新最后访问时间"""
        self.last_access = now if now is not None else time.time()
        self.access_count += 1


class Arena(Generic[T]):
    """
    带淘汰策略的 ID 索引存储

    Args:
        max_age: 条目最大空闲时间（秒）
        min_access_count: 超龄条目仍被保留所需的最少访问次数
        capacity: 最大条目数
        evictable: 判断条目是否允许被淘汰
        on_evict: 条目被淘汰时的回调 (key, value)
        clock: 未显式传入 now 时使用的时钟
    """

    def __init__(
        self,
        max_age: float,
        min_access_count: int = 0,
        capacity: Optional[int] = None,
        evictable: Optional[Callable[[T], bool]] = None,
        on_evict: Optional[Callable[[str, T], None]] = None,
        clock: Callable[[], float] = time.time,
        name: str = "arena",
    ):
        self.max_age = max_age
        self.min_access_count = min_access_count
        self.capacity = capacity
        self.evictable = evictable or (lambda _: True)
        self.on_evict = on_evict
        self.clock = clock
        self.name = name
        self._entries: Dict[str, ArenaEntry[T]] = {}
        self._lock = threading.RLock()

    def put(self, key: str, value: T, now: Optional[float] = None) -> None:
        now = now if now is not None else self.clock()
        with self._lock:
            self._entries[key] = ArenaEntry(value=value, created_at=now, last_access=now)
        if self.capacity is not None and len(self._entries) > self.capacity:
            self.evict(now)

    def get(self, key: str, touch: bool = True, now: Optional[float] = None) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if touch:
                entry.touch(now if now is not None else self.clock())
            return entry.value

    def entry(self, key: str) -> Optional[ArenaEntry[T]]:
        return self._entries.get(key)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def values(self) -> List[T]:
        with self._lock:
            return [e.value for e in self._entries.values()]

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key)
        if self.on_evict is not None:
            self.on_evict(key, entry.value)

    def evict(self, now: Optional[float] = None) -> List[str]:
        """
        执行淘汰

        Returns:
            被淘汰的 key 列表
        """
        now = now if now is not None else self.clock()
        evicted: List[str] = []

        with self._lock:
            for key, entry in list(self._entries.items()):
                expired = now - entry.last_access > self.max_age
                hot = self.min_access_count > 0 and entry.access_count >= self.min_access_count
                if expired and not hot and self.evictable(entry.value):
                    self._drop(key)
                    evicted.append(key)

            if self.capacity is not None and len(self._entries) > self.capacity:
                candidates = sorted(
                    (item for item in self._entries.items() if self.evictable(item[1].value)),
                    key=lambda item: item[1].last_access,
                )
                overflow = len(self._entries) - self.capacity
                for key, _ in candidates[:overflow]:
                    self._drop(key)
                    evicted.append(key)

        if evicted:
            logger.info("arena_evicted", arena=self.name, count=len(evicted), remaining=len(self._entries))

        return evicted


class TaskStore:
    """
    任务存储

    只有终态任务允许被淘汰，活跃任务永远保留。
    被淘汰的任务留下墓碑（最终状态），依赖检查仍能区分
    "已完成后被淘汰" 与 "从未出现"。
    """

    def __init__(
        self,
        retention_seconds: float = 86400.0,
        min_access_count: int = 0,
        max_tasks: Optional[int] = None,
        max_tombstones: int = 100_000,
        clock: Callable[[], float] = time.time,
    ):
        self.clock = clock
        self.max_tombstones = max_tombstones
        self._tombstones: "OrderedDict[str, TaskState]" = OrderedDict()
        self._arena: Arena[Task] = Arena(
            max_age=retention_seconds,
            min_access_count=min_access_count,
            capacity=max_tasks,
            evictable=lambda task: task.is_terminal,
            on_evict=self._bury,
            clock=clock,
            name="tasks",
        )

    def _bury(self, task_id: str, task: Task) -> None:
        self._tombstones[task_id] = task.state
        self._tombstones.move_to_end(task_id)
        while len(self._tombstones) > self.max_tombstones:
            self._tombstones.popitem(last=False)

    def add(self, task: Task, now: Optional[float] = None) -> None:
        self._tombstones.pop(task.id, None)
        self._arena.put(task.id, task, now)

    def get(self, task_id: str) -> Optional[Task]:
        """获取任务（计入访问次数）"""
        return self._arena.get(task_id)

    def peek(self, task_id: str) -> Optional[Task]:
        """获取任务（不计入访问次数，供调度器内部使用）"""
        return self._arena.get(task_id, touch=False)

    def final_state(self, task_id: str) -> Optional[TaskState]:
        """任务的最终状态；仍在池中的活跃任务或未知任务返回 None"""
        task = self.peek(task_id)
        if task is not None:
            return task.state if task.is_terminal else None
        return self._tombstones.get(task_id)

    def known(self, task_id: str) -> bool:
        """任务在池中，或曾经存在并已被淘汰"""
        return task_id in self._arena or task_id in self._tombstones

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._arena

    def __len__(self) -> int:
        return len(self._arena)

    def all(self) -> List[Task]:
        return self._arena.values()

    def evict(self, now: Optional[float] = None) -> List[str]:
        return self._arena.evict(now)

    def touch(self, task_id: str, now: Optional[float] = None) -> None:
        """刷新空闲计时（任务进入终态时调用，保留期从此刻起算）"""
        entry = self._arena.entry(task_id)
        if entry is not None:
            entry.last_access = now if now is not None else self.clock()
