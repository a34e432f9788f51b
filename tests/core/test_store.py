"""
对象池与任务存储测试
"""
import pytest

from core.scheduler import Arena, Task, TaskState, TaskStore


def finished(task_id: str) -> Task:
    task = Task(id=task_id, model_id="llama-3-8b")
    task.state = TaskState.COMPLETED
    return task


class TestArena:
    """对象池测试"""

    def test_put_get(self):
        arena = Arena(max_age=10.0)
        arena.put("a", 1, now=0.0)

        assert arena.get("a", now=1.0) == 1
        assert arena.entry("a").access_count == 1
        assert arena.get("missing") is None

    def test_get_without_touch(self):
        arena = Arena(max_age=10.0)
        arena.put("a", 1, now=0.0)
        arena.get("a", touch=False)

        assert arena.entry("a").access_count == 0
        assert arena.entry("a").last_access == 0.0

    def test_expired_entries_evicted(self):
        arena = Arena(max_age=10.0)
        arena.put("old", 1, now=0.0)
        arena.put("fresh", 2, now=95.0)

        assert arena.evict(now=100.0) == ["old"]
        assert "fresh" in arena

    def test_hot_entries_kept(self):
        """访问次数达标的条目即使超龄也保留"""
        arena = Arena(max_age=10.0, min_access_count=2)
        arena.put("hot", 1, now=0.0)
        arena.get("hot", now=1.0)
        arena.get("hot", now=2.0)

        assert arena.evict(now=100.0) == []
        assert len(arena) == 1

    def test_capacity_evicts_least_recent(self):
        arena = Arena(max_age=1e9, capacity=2)
        arena.put("a", 1, now=0.0)
        arena.put("b", 2, now=1.0)
        arena.get("a", now=2.0)
        arena.put("c", 3, now=3.0)

        assert sorted(arena) == ["a", "c"]

    def test_on_evict_callback(self):
        dropped = []
        arena = Arena(max_age=10.0, on_evict=lambda key, value: dropped.append((key, value)))
        arena.put("a", 1, now=0.0)
        arena.evict(now=100.0)

        assert dropped == [("a", 1)]

    def test_remove(self):
        arena = Arena(max_age=10.0)
        arena.put("a", 1)
        assert arena.remove("a") is True
        assert arena.remove("a") is False


class TestTaskStore:
    """任务存储测试"""

    def test_active_tasks_never_evicted(self):
        store = TaskStore(retention_seconds=0.0)
        store.add(Task(id="queued", model_id="llama-3-8b"))
        store.add(finished("done"))

        evicted = store.evict(now=1e12)

        assert evicted == ["done"]
        assert "queued" in store
        assert "done" not in store

    def test_capacity_only_drops_terminal(self):
        store = TaskStore(max_tasks=1)
        store.add(Task(id="a", model_id="llama-3-8b"))
        store.add(Task(id="b", model_id="llama-3-8b"))

        # 两个活跃任务都不可淘汰，容量暂时超限
        assert len(store) == 2

        store.add(finished("c"))
        assert "c" not in store
        assert len(store) == 2

    def test_peek_does_not_count_access(self):
        store = TaskStore(retention_seconds=10.0, min_access_count=1)
        store.add(finished("t"))

        store.peek("t")
        assert store.evict(now=1e12) == ["t"]

    def test_accessed_terminal_task_kept(self):
        store = TaskStore(retention_seconds=10.0, min_access_count=1)
        store.add(finished("t"))

        store.get("t")
        assert store.evict(now=1e12) == []

    def test_touch_restarts_retention(self):
        store = TaskStore(retention_seconds=10.0)
        store.add(finished("t"))
        store.touch("t", now=1e12)

        assert store.evict(now=1e12 + 5) == []
        assert store.evict(now=1e12 + 20) == ["t"]

    def test_evicted_task_leaves_tombstone(self):
        """淘汰后仍可查询最终状态"""
        store = TaskStore(retention_seconds=10.0, clock=lambda: 0.0)
        store.add(finished("done"))
        store.add(Task(id="queued", model_id="llama-3-8b"))

        assert store.final_state("done") == TaskState.COMPLETED
        assert store.final_state("queued") is None
        assert store.evict(now=100.0) == ["done"]

        assert store.peek("done") is None
        assert store.final_state("done") == TaskState.COMPLETED
        assert store.known("done")
        assert not store.known("never")
        assert store.final_state("never") is None

    def test_tombstones_bounded(self):
        store = TaskStore(retention_seconds=0.0, max_tombstones=2, clock=lambda: 0.0)
        for task_id in ("a", "b", "c"):
            store.add(finished(task_id))

        assert store.evict(now=1.0) == ["a", "b", "c"]
        assert store.final_state("a") is None
        assert store.final_state("c") == TaskState.COMPLETED

    def test_injected_clock_is_default(self):
        """未显式传入时间时使用注入的时钟"""
        now = [100.0]
        store = TaskStore(retention_seconds=10.0, clock=lambda: now[0])
        store.add(finished("t"))

        now[0] = 105.0
        store.touch("t")

        assert store.evict(now=112.0) == []
        assert store.evict(now=120.0) == ["t"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
