"""
资源监控测试
"""
import math

import pytest

from core.scheduler import MockProbe, ResourceMonitor, ResourceSnapshot, create_resource_monitor


class ScriptedProbe:
    """按顺序返回预设快照的探测器"""

    def __init__(self, snapshots):
        self.snapshots = list(snapshots)

    def read(self) -> ResourceSnapshot:
        return self.snapshots.pop(0)


def snapshot_at(t: float, used_mb: int, utilization: float = 0.2) -> ResourceSnapshot:
    return ResourceSnapshot(
        utilization=utilization,
        memory_total_mb=24000,
        memory_used_mb=used_mb,
        memory_free_mb=24000 - used_mb,
        temperature_c=50.0,
        timestamp=t,
    )


class TestResourceSnapshot:
    """快照测试"""

    def test_fractions(self):
        snapshot = ResourceSnapshot.from_fractions(0.25, memory_total_mb=16000, utilization=0.6)
        assert snapshot.free_fraction == pytest.approx(0.25)
        assert snapshot.used_fraction == pytest.approx(0.75)
        assert snapshot.load == pytest.approx(0.75)

    def test_load_uses_utilization(self):
        snapshot = ResourceSnapshot.from_fractions(0.9, utilization=0.95)
        assert snapshot.load == pytest.approx(0.95)

    def test_zero_memory(self):
        snapshot = ResourceSnapshot(utilization=1.0, memory_total_mb=0, memory_used_mb=0, memory_free_mb=0)
        assert snapshot.free_fraction == 0.0
        assert snapshot.used_fraction == 1.0


class TestResourceMonitor:
    """监控器测试"""

    def test_refresh_publishes_snapshot(self):
        probe = MockProbe(memory_total_mb=24000, memory_used_mb=6000)
        monitor = ResourceMonitor(probe)

        snapshot = monitor.refresh()

        assert monitor.snapshot() is snapshot
        assert snapshot.memory_free_mb == 18000
        assert not snapshot.stale
        assert monitor.mock_mode is True

    def test_probe_failure_returns_stale(self):
        """探测失败时沿用上次成功的快照"""
        probe = MockProbe(memory_total_mb=24000, memory_used_mb=6000)
        monitor = ResourceMonitor(probe)
        good = monitor.refresh()

        probe.failing = True
        stale = monitor.refresh()

        assert stale.stale is True
        assert stale.memory_free_mb == good.memory_free_mb
        assert monitor.probe_failures == 1

    def test_probe_never_succeeded(self):
        """从未成功探测时视为无可用资源"""
        probe = MockProbe()
        probe.failing = True
        monitor = ResourceMonitor(probe)

        snapshot = monitor.snapshot()

        assert snapshot.stale is True
        assert snapshot.free_fraction == 0.0

    def test_forecast_zero_horizon(self):
        monitor = ResourceMonitor(MockProbe())
        monitor.refresh()

        forecast = monitor.forecast(0)

        assert forecast.confidence == 1.0
        assert forecast.snapshot is monitor.snapshot()

    def test_forecast_single_sample(self):
        monitor = ResourceMonitor(MockProbe(), forecast_horizon_scale=30.0)
        monitor.refresh()

        forecast = monitor.forecast(15.0)

        assert forecast.confidence == pytest.approx(math.exp(-0.5))
        assert forecast.free_fraction == monitor.snapshot().free_fraction

    def test_forecast_linear_trend(self):
        """线性外推显存占用，置信度随预测时长衰减"""
        probe = ScriptedProbe([snapshot_at(t, 1000 + 1000 * t) for t in (0.0, 1.0, 2.0)])
        monitor = ResourceMonitor(probe)
        for _ in range(3):
            monitor.refresh()

        forecast = monitor.forecast(2.0)

        assert abs(forecast.snapshot.memory_used_mb - 5000) <= 1
        assert forecast.confidence == pytest.approx(math.exp(-1.0))
        assert forecast.snapshot.timestamp == pytest.approx(4.0)

    def test_forecast_clamped(self):
        """预测结果限定在物理范围内"""
        probe = ScriptedProbe([snapshot_at(t, 10000 * (t + 1)) for t in (0.0, 1.0)])
        monitor = ResourceMonitor(probe)
        monitor.refresh()
        monitor.refresh()

        forecast = monitor.forecast(10.0)

        assert forecast.snapshot.memory_used_mb == 24000
        assert forecast.snapshot.memory_free_mb == 0

    def test_stale_forecast_halves_confidence(self):
        probe = MockProbe()
        monitor = ResourceMonitor(probe, forecast_horizon_scale=30.0)
        monitor.refresh()
        probe.failing = True
        monitor.refresh()

        forecast = monitor.forecast(30.0)
        assert forecast.confidence == pytest.approx(math.exp(-1.0) * 0.5)

    def test_create_mock_monitor(self):
        monitor = create_resource_monitor(mock_mode=True, mock_memory_total_mb=8000)
        assert monitor.mock_mode is True
        assert monitor.snapshot().memory_total_mb == 8000

    def test_summary(self):
        monitor = ResourceMonitor(MockProbe())
        summary = monitor.get_summary()
        assert summary["mock_mode"] is True
        assert summary["snapshot"]["memory_total_mb"] == 24000


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
