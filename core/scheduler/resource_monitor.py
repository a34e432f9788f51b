"""
GPU 资源监控

负责独占 GPU 的状态探测（pynvml 或 mock）、时间点快照和短期趋势预测。
探测失败时返回最后一次成功的快照并标记 stale，从不向调用方抛出异常。
"""
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, Optional, Protocol
import asyncio
import math
import threading
import time

import numpy as np
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    """GPU 状态快照（不可变）"""
    utilization: float           # 0-1
    memory_total_mb: int
    memory_used_mb: int
    memory_free_mb: int
    temperature_c: float = 0.0
    timestamp: float = field(default_factory=time.time)
    stale: bool = False
    name: str = "Unknown GPU"

    @classmethod
    def from_fractions(
        cls,
        free: float,
        memory_total_mb: int = 24000,
        utilization: float = 0.0,
        temperature_c: float = 40.0,
        timestamp: Optional[float] = None,
    ) -> "ResourceSnapshot":
        """按可用显存比例构造快照"""
        free_mb = int(round(memory_total_mb * max(0.0, min(free, 1.0))))
        return cls(
            utilization=utilization,
            memory_total_mb=memory_total_mb,
            memory_used_mb=memory_total_mb - free_mb,
            memory_free_mb=free_mb,
            temperature_c=temperature_c,
            timestamp=timestamp if timestamp is not None else time.time(),
        )

    @property
    def free_fraction(self) -> float:
        if self.memory_total_mb <= 0:
            return 0.0
        return self.memory_free_mb / self.memory_total_mb

    @property
    def used_fraction(self) -> float:
        if self.memory_total_mb <= 0:
            return 1.0
        return self.memory_used_mb / self.memory_total_mb

    @property
    def load(self) -> float:
        """综合负载：显存占用与计算利用率取大"""
        return max(self.used_fraction, self.utilization)

    def as_stale(self) -> "ResourceSnapshot":
        return replace(self, stale=True)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "utilization": round(self.utilization, 4),
            "memory_total_mb": self.memory_total_mb,
            "memory_used_mb": self.memory_used_mb,
            "memory_free_mb": self.memory_free_mb,
            "free_fraction": round(self.free_fraction, 4),
            "temperature_c": self.temperature_c,
            "timestamp": self.timestamp,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class PredictedSnapshot:
    """预测快照，置信度随预测时长下降"""
    snapshot: ResourceSnapshot
    horizon: float
    confidence: float

    @property
    def free_fraction(self) -> float:
        return self.snapshot.free_fraction

    def to_dict(self) -> dict:
        return {
            **self.snapshot.to_dict(),
            "horizon": self.horizon,
            "confidence": round(self.confidence, 4),
        }


class ResourceProbe(Protocol):
    """外部 GPU 遥测源"""

    def read(self) -> ResourceSnapshot:
        ...


class NvmlProbe:
    """通过 NVML 读取单块 GPU 的状态"""

    def __init__(self, device_index: int = 0):
        import pynvml

        pynvml.nvmlInit()
        self._nvml = pynvml
        self.device_index = device_index
        self._handle = pynvml.nvmlDeviceGetHandleByIndex(device_index)
        name = pynvml.nvmlDeviceGetName(self._handle)
        self.name = name.decode() if isinstance(name, bytes) else name
        logger.info("nvml_probe_initialized", device_index=device_index, name=self.name)

    def read(self) -> ResourceSnapshot:
        memory = self._nvml.nvmlDeviceGetMemoryInfo(self._handle)
        util = self._nvml.nvmlDeviceGetUtilizationRates(self._handle)
        temp = self._nvml.nvmlDeviceGetTemperature(self._handle, self._nvml.NVML_TEMPERATURE_GPU)
        return ResourceSnapshot(
            utilization=util.gpu / 100,
            memory_total_mb=memory.total // 1024 // 1024,
            memory_used_mb=memory.used // 1024 // 1024,
            memory_free_mb=memory.free // 1024 // 1024,
            temperature_c=float(temp),
            name=self.name,
        )

    def shutdown(self):
        try:
            self._nvml.nvmlShutdown()
        except self._nvml.NVMLError as e:
            logger.warning("nvml_shutdown_failed", error=str(e))


class MockProbe:
    """模拟 GPU（无 GPU 环境或测试使用）"""

    def __init__(
        self,
        memory_total_mb: int = 24000,
        memory_used_mb: int = 2000,
        utilization: float = 0.0,
        temperature_c: float = 40.0,
    ):
        self.memory_total_mb = memory_total_mb
        self.memory_used_mb = memory_used_mb
        self.utilization = utilization
        self.temperature_c = temperature_c
        self.failing = False
        self.name = "Mock GPU 0"

    def set_free_fraction(self, free: float):
        free = max(0.0, min(free, 1.0))
        self.memory_used_mb = self.memory_total_mb - int(round(self.memory_total_mb * free))

    def read(self) -> ResourceSnapshot:
        if self.failing:
            raise RuntimeError("mock probe failure")
        return ResourceSnapshot(
            utilization=self.utilization,
            memory_total_mb=self.memory_total_mb,
            memory_used_mb=self.memory_used_mb,
            memory_free_mb=self.memory_total_mb - self.memory_used_mb,
            temperature_c=self.temperature_c,
            name=self.name,
        )


def nvml_available() -> bool:
    """检查是否有 GPU 可用"""
    try:
        import pynvml
        pynvml.nvmlInit()
        count = pynvml.nvmlDeviceGetCount()
        pynvml.nvmlShutdown()
        return count > 0
    except Exception:
        return False


class ResourceMonitor:
    """
    GPU 资源监控器

    功能：
    - 轮询探测 GPU 状态，发布不可变快照
    - 探测失败时沿用最后一次成功的快照（stale=True）
    - 基于最近快照的线性趋势外推预测
    """

    def __init__(
        self,
        probe: ResourceProbe,
        history_size: int = 30,
        forecast_horizon_scale: float = 30.0,
    ):
        self.probe = probe
        self.forecast_horizon_scale = forecast_horizon_scale
        self._history: Deque[ResourceSnapshot] = deque(maxlen=history_size)
        self._latest: Optional[ResourceSnapshot] = None
        self._last_good: Optional[ResourceSnapshot] = None
        self._lock = threading.Lock()
        self._running = False
        self.probe_failures = 0

    @property
    def mock_mode(self) -> bool:
        return isinstance(self.probe, MockProbe)

    def refresh(self) -> ResourceSnapshot:
        """探测一次并发布新快照"""
        try:
            snapshot = self.probe.read()
        except Exception as e:
            self.probe_failures += 1
            logger.warning("resource_probe_failed", error=str(e), failures=self.probe_failures)
            if self._last_good is not None:
                snapshot = self._last_good.as_stale()
            else:
                # 从未成功探测：视为无可用资源
                snapshot = ResourceSnapshot(
                    utilization=1.0,
                    memory_total_mb=0,
                    memory_used_mb=0,
                    memory_free_mb=0,
                    stale=True,
                )
            with self._lock:
                self._latest = snapshot
            return snapshot

        with self._lock:
            self._latest = snapshot
            self._last_good = snapshot
            self._history.append(snapshot)
        return snapshot

    def snapshot(self) -> ResourceSnapshot:
        """获取最近一次快照（不阻塞；尚无快照时探测一次）"""
        latest = self._latest
        if latest is None:
            return self.refresh()
        return latest

    def forecast(self, horizon: float) -> PredictedSnapshot:
        """
        预测 horizon 秒后的资源状态

        对历史快照的显存占用与利用率做最小二乘线性拟合后外推，
        结果限定在物理范围内。置信度 exp(-horizon / 历史跨度)。
        """
        current = self.snapshot()
        with self._lock:
            history = list(self._history)

        if horizon <= 0:
            return PredictedSnapshot(snapshot=current, horizon=0.0, confidence=1.0)

        if len(history) < 2 or current.stale:
            confidence = math.exp(-horizon / self.forecast_horizon_scale)
            if current.stale:
                confidence *= 0.5
            return PredictedSnapshot(snapshot=current, horizon=horizon, confidence=confidence)

        t0 = history[0].timestamp
        ts = np.array([s.timestamp - t0 for s in history])
        span = float(ts[-1] - ts[0])
        if span <= 0:
            return PredictedSnapshot(
                snapshot=current,
                horizon=horizon,
                confidence=math.exp(-horizon / self.forecast_horizon_scale),
            )

        target_t = ts[-1] + horizon
        used = np.array([s.memory_used_mb for s in history], dtype=float)
        util = np.array([s.utilization for s in history], dtype=float)
        temp = np.array([s.temperature_c for s in history], dtype=float)

        total = current.memory_total_mb
        used_pred = float(np.clip(np.polyval(np.polyfit(ts, used, 1), target_t), 0, total))
        util_pred = float(np.clip(np.polyval(np.polyfit(ts, util, 1), target_t), 0.0, 1.0))
        temp_pred = float(np.polyval(np.polyfit(ts, temp, 1), target_t))

        used_mb = int(round(used_pred))
        predicted = ResourceSnapshot(
            utilization=util_pred,
            memory_total_mb=total,
            memory_used_mb=used_mb,
            memory_free_mb=total - used_mb,
            temperature_c=round(temp_pred, 1),
            timestamp=current.timestamp + horizon,
            name=current.name,
        )
        return PredictedSnapshot(
            snapshot=predicted,
            horizon=horizon,
            confidence=math.exp(-horizon / span),
        )

    def history(self) -> list:
        with self._lock:
            return list(self._history)

    async def start_polling(self, interval: float = 1.0):
        """启动探测循环"""
        if self._running:
            logger.warning("resource_monitor_already_running")
            return

        self._running = True
        logger.info("resource_monitor_started", interval=interval, mock_mode=self.mock_mode)

        while self._running:
            self.refresh()
            await asyncio.sleep(interval)

    def stop_polling(self):
        """停止探测循环"""
        self._running = False
        logger.info("resource_monitor_stopped")

    def get_summary(self) -> dict:
        """获取监控摘要"""
        snapshot = self.snapshot()
        return {
            "mock_mode": self.mock_mode,
            "probe_failures": self.probe_failures,
            "history_size": len(self._history),
            "snapshot": snapshot.to_dict(),
        }

    def shutdown(self):
        """关闭监控器"""
        self.stop_polling()
        if isinstance(self.probe, NvmlProbe):
            self.probe.shutdown()


def create_resource_monitor(
    device_index: int = 0,
    mock_mode: bool = False,
    mock_memory_total_mb: int = 24000,
    history_size: int = 30,
    forecast_horizon_scale: float = 30.0,
) -> ResourceMonitor:
    """
    创建资源监控器

    未检测到 GPU 或强制 mock_mode 时使用模拟探测器。
    """
    if mock_mode or not nvml_available():
        probe: ResourceProbe = MockProbe(memory_total_mb=mock_memory_total_mb)
        logger.warning("resource_monitor_mock_mode", memory_total_mb=mock_memory_total_mb)
    else:
        probe = NvmlProbe(device_index)

    return ResourceMonitor(
        probe,
        history_size=history_size,
        forecast_horizon_scale=forecast_horizon_scale,
    )
