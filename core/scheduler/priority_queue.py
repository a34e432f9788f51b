"""
优先级队列实现

按 dynamic_priority 降序排列，同优先级按提交序号 FIFO。
队列只理解依赖就绪：peek/pop 返回依赖全部完成的最高优先级任务，
资源是否足够不是队列关心的问题。

两种后端:
- MemoryTaskQueue: 内存堆 + 惰性失效，reprioritize O(log n)
- RedisTaskQueue: Redis Sorted Set，score = -priority，成员带零填充序号保证 FIFO
"""
from typing import Dict, Iterator, List, Optional, Tuple
import heapq
import itertools

import structlog
from redis import Redis

from core.errors import DuplicateTaskError
from .store import TaskStore
from .task import Task
from .task_lifecycle import TaskState

logger = structlog.get_logger(__name__)


class BaseTaskQueue:
    """
    队列公共逻辑：依赖就绪判断、按序遍历、再平衡

    子类实现 _ordered_ids / _add / _discard / _set_priority / position / size。
    """

    def __init__(
        self,
        store: TaskStore,
        rebalance_threshold: float = 0.9,
        rebalance_priority_floor: float = 1.0,
    ):
        self.store = store
        self.rebalance_threshold = rebalance_threshold
        self.rebalance_priority_floor = rebalance_priority_floor

    # ---- 子类实现 ----

    def _ordered_ids(self) -> Iterator[str]:
        raise NotImplementedError

    def _add(self, task: Task) -> None:
        raise NotImplementedError

    def _discard(self, task_id: str) -> bool:
        raise NotImplementedError

    def _set_priority(self, task_id: str, priority: float) -> bool:
        raise NotImplementedError

    def position(self, task_id: str) -> Optional[int]:
        raise NotImplementedError

    def size(self) -> int:
        raise NotImplementedError

    def contains(self, task_id: str) -> bool:
        raise NotImplementedError

    # ---- 公共操作 ----

    def is_ready(self, task: Task) -> bool:
        """依赖是否全部完成"""
        return all(self.store.final_state(dep_id) == TaskState.COMPLETED for dep_id in task.dependencies)

    def enqueue(self, task: Task) -> None:
        """
        任务入队

        Raises:
            DuplicateTaskError: 任务 ID 已在队列中
        """
        if self.contains(task.id):
            raise DuplicateTaskError(task.id)
        self._add(task)
        logger.info(
            "task_enqueued",
            task_id=task.id,
            priority=task.dynamic_priority,
            queue_size=self.size(),
        )

    def items(self) -> List[Task]:
        """按优先级顺序返回队列中全部任务"""
        tasks = []
        for task_id in self._ordered_ids():
            task = self.store.peek(task_id)
            if task is not None:
                tasks.append(task)
        return tasks

    def ready_in_order(self) -> List[Task]:
        """按优先级顺序返回依赖就绪的任务"""
        return [task for task in self.items() if self.is_ready(task)]

    def peek(self) -> Optional[Task]:
        """查看最高优先级的就绪任务（不移除）"""
        for task_id in self._ordered_ids():
            task = self.store.peek(task_id)
            if task is not None and self.is_ready(task):
                return task
        return None

    def pop(self) -> Optional[Task]:
        """取出最高优先级的就绪任务"""
        task = self.peek()
        if task is not None:
            self._discard(task.id)
            logger.info("task_dequeued", task_id=task.id, queue_size=self.size())
        return task

    def remove(self, task_id: str) -> bool:
        """移除任务（用于取消），不存在时为空操作"""
        removed = self._discard(task_id)
        if removed:
            logger.info("task_removed_from_queue", task_id=task_id)
        return removed

    def reprioritize(self, task_id: str, new_priority: float) -> bool:
        """修改任务优先级，保持原提交序号"""
        task = self.store.peek(task_id)
        if task is None or not self._set_priority(task_id, new_priority):
            return False
        old_priority = task.dynamic_priority
        task.dynamic_priority = new_priority
        if old_priority != new_priority:
            logger.debug(
                "task_reprioritized",
                task_id=task_id,
                old_priority=old_priority,
                new_priority=new_priority,
            )
        return True

    def rebalance(self, load: float, capacity: float = 1.0) -> List[str]:
        """
        负载再平衡

        负载超过容量的 rebalance_threshold 时，把优先级低于下限的非关键任务
        预先标记为 degraded，准入时优先走降级方案。

        Returns:
            被降级的任务 ID
        """
        if load <= self.rebalance_threshold * capacity:
            return []

        degraded = []
        for task in self.items():
            if task.state not in (TaskState.QUEUED, TaskState.RUNNABLE):
                continue
            if task.dynamic_priority >= self.rebalance_priority_floor:
                continue
            task.preemptively_degraded = True
            task.transition(TaskState.DEGRADED, reason="rebalance")
            degraded.append(task.id)

        if degraded:
            logger.warning(
                "queue_rebalanced",
                load=round(load, 4),
                threshold=self.rebalance_threshold,
                degraded_count=len(degraded),
            )
        return degraded

    def clear(self) -> int:
        """清空队列（慎用）"""
        ids = list(self._ordered_ids())
        for task_id in ids:
            self._discard(task_id)
        logger.warning("queue_cleared", removed_count=len(ids))
        return len(ids)


class MemoryTaskQueue(BaseTaskQueue):
    """
    内存版优先级队列

    堆元素 (-priority, sequence, version, task_id)；reprioritize 压入新版本，
    旧版本出堆时按版本号丢弃。
    """

    def __init__(self, store: TaskStore, **kwargs):
        super().__init__(store, **kwargs)
        self._heap: List[Tuple[float, int, int, str]] = []
        self._versions: Dict[str, int] = {}
        self._sequences: Dict[str, int] = {}
        self._counter = itertools.count()

    def _push(self, task_id: str, priority: float) -> None:
        version = next(self._counter)
        self._versions[task_id] = version
        heapq.heappush(self._heap, (-priority, self._sequences[task_id], version, task_id))

    def _is_current(self, entry: Tuple[float, int, int, str]) -> bool:
        return self._versions.get(entry[3]) == entry[2]

    def _compact_head(self) -> None:
        while self._heap and not self._is_current(self._heap[0]):
            heapq.heappop(self._heap)

    def _ordered_ids(self) -> Iterator[str]:
        self._compact_head()
        if not self._heap:
            return iter(())
        live = sorted(entry for entry in self._heap if self._is_current(entry))
        return iter([entry[3] for entry in live])

    def peek(self) -> Optional[Task]:
        # 常见情况：堆顶即就绪
        self._compact_head()
        if self._heap:
            task = self.store.peek(self._heap[0][3])
            if task is not None and self.is_ready(task):
                return task
        return super().peek()

    def _add(self, task: Task) -> None:
        self._sequences[task.id] = task.sequence
        self._push(task.id, task.dynamic_priority)

    def _discard(self, task_id: str) -> bool:
        if task_id not in self._versions:
            return False
        del self._versions[task_id]
        del self._sequences[task_id]
        self._compact_head()
        return True

    def _set_priority(self, task_id: str, priority: float) -> bool:
        if task_id not in self._versions:
            return False
        self._push(task_id, priority)
        # 过期条目过多时重建堆
        if len(self._heap) > 4 * len(self._versions) + 64:
            self._heap = [e for e in self._heap if self._is_current(e)]
            heapq.heapify(self._heap)
        return True

    def contains(self, task_id: str) -> bool:
        return task_id in self._versions

    def position(self, task_id: str) -> Optional[int]:
        for i, tid in enumerate(self._ordered_ids()):
            if tid == task_id:
                return i
        return None

    def size(self) -> int:
        return len(self._versions)


class RedisTaskQueue(BaseTaskQueue):
    """
    基于 Redis Sorted Set 的优先级队列

    Score = -dynamic_priority（小者先出）；同分成员按字典序排列，
    成员格式 "<零填充序号>:<task_id>" 保证同优先级 FIFO。
    """

    def __init__(self, redis_client: Redis, store: TaskStore, key_prefix: str = "dedigpu", **kwargs):
        super().__init__(store, **kwargs)
        self.redis = redis_client
        self.queue_key = f"{key_prefix}:task_queue"
        self.member_key = f"{key_prefix}:task_members"

    @staticmethod
    def _decode(value) -> str:
        if isinstance(value, bytes):
            return value.decode()
        return value

    @staticmethod
    def _member(task: Task) -> str:
        return f"{task.sequence:012d}:{task.id}"

    @staticmethod
    def _task_id(member: str) -> str:
        return member.split(":", 1)[1]

    def _get_member(self, task_id: str) -> Optional[str]:
        member = self.redis.hget(self.member_key, task_id)
        return self._decode(member) if member is not None else None

    def _ordered_ids(self) -> Iterator[str]:
        members = self.redis.zrange(self.queue_key, 0, -1)
        return iter([self._task_id(self._decode(m)) for m in members])

    def _add(self, task: Task) -> None:
        member = self._member(task)
        pipe = self.redis.pipeline()
        pipe.zadd(self.queue_key, {member: -task.dynamic_priority})
        pipe.hset(self.member_key, task.id, member)
        pipe.execute()

    def _discard(self, task_id: str) -> bool:
        member = self._get_member(task_id)
        if member is None:
            return False
        pipe = self.redis.pipeline()
        pipe.zrem(self.queue_key, member)
        pipe.hdel(self.member_key, task_id)
        pipe.execute()
        return True

    def _set_priority(self, task_id: str, priority: float) -> bool:
        member = self._get_member(task_id)
        if member is None:
            return False
        self.redis.zadd(self.queue_key, {member: -priority})
        return True

    def contains(self, task_id: str) -> bool:
        return bool(self.redis.hexists(self.member_key, task_id))

    def position(self, task_id: str) -> Optional[int]:
        member = self._get_member(task_id)
        if member is None:
            return None
        return self.redis.zrank(self.queue_key, member)

    def size(self) -> int:
        return self.redis.zcard(self.queue_key)
