"""
反馈整合与上下文池测试
"""
import asyncio

import pytest

from core.scheduler import ContextPool, FeedbackIntegrator, FeedbackRecord, FeedbackSource, Task
from core.scheduler.feedback import rating_from_quality


class TestFeedbackRecord:
    """反馈记录测试"""

    def test_rating_range(self):
        with pytest.raises(ValueError):
            FeedbackRecord("t", 0)
        with pytest.raises(ValueError):
            FeedbackRecord("t", 6)

    def test_centered_rating(self):
        assert FeedbackRecord("t", 1).centered_rating == -1.0
        assert FeedbackRecord("t", 3).centered_rating == 0.0
        assert FeedbackRecord("t", 5).centered_rating == 1.0

    def test_to_dict(self):
        record = FeedbackRecord("t", 4, category="chat", timestamp=10.0, source=FeedbackSource.EXECUTION)
        data = record.to_dict()
        assert data["source"] == "execution"
        assert data["category"] == "chat"

    def test_rating_from_quality(self):
        assert rating_from_quality(1.0) == 5.0
        assert rating_from_quality(0.0) == 1.0
        assert rating_from_quality(2.0) == 5.0


class TestFeedbackIntegrator:
    """反馈整合器测试"""

    def test_window_published_on_flush(self):
        """记录先进入缓冲区，折叠后才对优先级计算可见"""
        integrator = FeedbackIntegrator(batch_size=10, flush_interval=60.0)
        integrator._last_flush = 100.0
        integrator.record_rating("t1", 5, now=101.0)

        assert integrator.window() == ()
        assert integrator.pending == 1

        assert integrator.flush(now=102.0) == 1
        assert [r.task_id for r in integrator.window()] == ["t1"]
        assert integrator.pending == 0

    def test_batch_size_triggers_flush(self):
        integrator = FeedbackIntegrator(batch_size=3, flush_interval=3600.0)
        integrator._last_flush = 100.0
        for i in range(3):
            integrator.record_rating(f"t{i}", 4, now=100.0 + i)

        assert len(integrator.window()) == 3
        assert integrator.stats["flushes"] == 1

    def test_interval_triggers_flush(self):
        integrator = FeedbackIntegrator(batch_size=100, flush_interval=5.0)
        integrator._last_flush = 100.0
        integrator.record_rating("t1", 4, now=101.0)
        assert integrator.window() == ()

        integrator.record_rating("t2", 4, now=106.0)
        assert len(integrator.window()) == 2

    def test_window_pruned_by_age(self):
        integrator = FeedbackIntegrator(window_seconds=100.0)
        integrator.record_rating("old", 4, now=0.0)
        integrator.record_rating("new", 4, now=150.0)

        integrator.flush(now=160.0)

        assert [r.task_id for r in integrator.window()] == ["new"]

    def test_idle_window_ages_out(self):
        """没有新反馈时，定期折叠也会把超龄记录移出窗口"""
        integrator = FeedbackIntegrator(window_seconds=100.0, flush_interval=10.0)
        integrator._last_flush = 0.0
        integrator.record_rating("t1", 5, now=1.0)
        integrator.flush(now=1.0)

        assert integrator.maybe_flush(now=50.0) == 0
        assert len(integrator.window()) == 1

        integrator.maybe_flush(now=200.0)
        assert integrator.window() == ()
        assert integrator.should_flush(now=300.0) is False

    def test_window_size_limit(self):
        integrator = FeedbackIntegrator(window_size=3, window_seconds=1e9)
        for i in range(5):
            integrator.record_rating(f"t{i}", 4, now=float(i))
        integrator.flush(now=10.0)

        assert [r.task_id for r in integrator.window()] == ["t2", "t3", "t4"]

    def test_window_snapshot_is_immutable(self):
        """已发布的窗口不受后续折叠影响"""
        integrator = FeedbackIntegrator(window_seconds=1e9)
        integrator.record_rating("t1", 4, now=1.0)
        integrator.flush(now=2.0)
        published = integrator.window()

        integrator.record_rating("t2", 4, now=3.0)
        integrator.flush(now=4.0)

        assert len(published) == 1
        assert len(integrator.window()) == 2

    def test_record_execution(self):
        integrator = FeedbackIntegrator()
        task = Task(id="t", model_id="llama-3-8b", category="code")

        ok = integrator.record_execution(task, quality=0.95, latency=1.2, now=1.0)
        failed = integrator.record_execution(task, quality=0.95, success=False, now=2.0)

        assert ok.rating == pytest.approx(4.8)
        assert ok.category == "code"
        assert ok.source == FeedbackSource.EXECUTION
        assert failed.rating == 1.0
        assert failed.quality is None

    def test_context_reuse(self):
        """第二次使用同一上下文产生复用反馈"""
        integrator = FeedbackIntegrator()
        task = Task(id="t", model_id="llama-3-8b", context_id="ctx-1")

        assert integrator.record_context_reuse(task, now=1.0) is None
        record = integrator.record_context_reuse(task, now=2.0)

        assert record.source == FeedbackSource.CONTEXT
        assert record.rating == 4.0
        assert integrator.context_pool.hits == 1
        assert integrator.record_context_reuse(Task(id="u", model_id="llama-3-8b")) is None

    @pytest.mark.asyncio
    async def test_flush_loop(self):
        integrator = FeedbackIntegrator(batch_size=100, flush_interval=0.01)
        integrator.record_rating("t1", 5)

        loop = asyncio.create_task(integrator.start_flush_loop())
        await asyncio.sleep(0.05)
        integrator.stop_flush_loop()
        await asyncio.wait_for(loop, 1.0)

        assert [r.task_id for r in integrator.window()] == ["t1"]


class TestContextPool:
    """上下文池测试"""

    def test_acquire_hit_and_miss(self):
        pool = ContextPool()
        assert pool.acquire("a", now=0.0) is False
        assert pool.acquire("a", now=1.0) is True
        assert "a" in pool
        assert pool.get_summary() == {"size": 1, "hits": 1, "misses": 1}

    def test_evict_idle_contexts(self):
        """空闲超时且命中次数不足的上下文被淘汰"""
        pool = ContextPool(max_age=10.0, min_hits=2)
        pool.acquire("cold", now=0.0)
        pool.acquire("hot", now=0.0)
        pool.acquire("hot", now=1.0)
        pool.acquire("hot", now=2.0)

        evicted = pool.evict(now=100.0)

        assert evicted == ["cold"]
        assert "hot" in pool

    def test_capacity(self):
        pool = ContextPool(max_age=1e9, min_hits=0, capacity=2)
        pool.acquire("a", now=0.0)
        pool.acquire("b", now=1.0)
        pool.acquire("c", now=2.0)

        assert len(pool) == 2
        assert "a" not in pool


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
