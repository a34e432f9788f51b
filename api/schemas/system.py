"""
系统相关数据模型
"""
from pydantic import BaseModel, Field
from typing import Optional, List


class GPUSnapshotInfo(BaseModel):
    """GPU 状态快照"""
    name: str = Field(..., description="GPU 名称")
    utilization: float = Field(..., description="计算利用率 0-1")
    memory_total_mb: int = Field(..., description="总显存 (MB)")
    memory_used_mb: int = Field(..., description="已用显存 (MB)")
    memory_free_mb: int = Field(..., description="可用显存 (MB)")
    free_fraction: float = Field(..., description="可用显存比例")
    temperature_c: float = Field(..., description="温度 (°C)")
    timestamp: float = Field(..., description="采样时间")
    stale: bool = Field(default=False, description="是否为过期快照（探测失败）")


class ResourceStatusResponse(BaseModel):
    """资源状态响应"""
    snapshot: GPUSnapshotInfo = Field(..., description="最新快照")
    mock_mode: bool = Field(..., description="是否为模拟 GPU")
    probe_failures: int = Field(..., description="累计探测失败次数")
    history_size: int = Field(..., description="历史快照数")
    running_task: Optional[str] = Field(None, description="当前运行的任务 ID")


class ForecastResponse(BaseModel):
    """资源预测响应"""
    snapshot: GPUSnapshotInfo = Field(..., description="预测快照")
    horizon: float = Field(..., description="预测时长（秒）")
    confidence: float = Field(..., description="置信度 0-1")


class QueuedTaskInfo(BaseModel):
    """队列中的任务"""
    task_id: str = Field(..., description="任务 ID")
    state: str = Field(..., description="任务状态")
    priority: float = Field(..., description="动态优先级")
    position: int = Field(..., description="队列位置")
    ready: bool = Field(..., description="依赖是否就绪")
    deferred_ticks: int = Field(..., description="连续推迟周期数")
    passed_over_ticks: int = Field(0, description="被更高优先级任务越过的周期数")
    wait_time_seconds: float = Field(..., description="已等待时间（秒）")


class QueueStatusResponse(BaseModel):
    """队列状态响应"""
    size: int = Field(..., description="排队任务数")
    ready: int = Field(..., description="依赖就绪的任务数")
    running: Optional[str] = Field(None, description="当前运行的任务 ID")
    tasks: List[QueuedTaskInfo] = Field(default_factory=list, description="队首任务")


class SystemConfigResponse(BaseModel):
    """系统配置响应（脱敏）"""
    version: str = Field(..., description="系统版本")
    queue_backend: str = Field(..., description="队列后端")
    tick_interval_ms: int = Field(..., description="调度轮询间隔（毫秒）")
    starvation_ticks: int = Field(..., description="判定饥饿的周期数")
    max_chunks: int = Field(..., description="最大分块数")
    supported_models: List[str] = Field(..., description="支持的模型变体")
