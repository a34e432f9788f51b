"""
配置管理系统

支持:
1. 环境变量读取
2. .env 文件
3. 类型验证
4. 敏感信息脱敏
"""
from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseSettings):
    """Redis 配置（优先级队列后端，可选）"""
    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore"
    )

    enabled: bool = Field(default=False, description="是否使用 Redis 队列")
    host: str = Field(default="localhost", description="Redis 主机")
    port: int = Field(default=6379, ge=1, le=65535, description="Redis 端口")
    password: Optional[str] = Field(default=None, description="Redis 密码")
    db: int = Field(default=0, ge=0, le=15, description="Redis 数据库编号")
    key_prefix: str = Field(default="dedigpu", description="键前缀")

    @property
    def url(self) -> str:
        """构建 Redis 连接 URL"""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class MonitorSettings(BaseSettings):
    """GPU 资源监控配置"""
    model_config = SettingsConfigDict(
        env_prefix="MONITOR_",
        extra="ignore"
    )

    device_index: int = Field(default=0, ge=0, description="独占 GPU 的设备编号")
    mock_mode: bool = Field(default=False, description="强制模拟模式（无 GPU 环境）")
    mock_memory_total_mb: int = Field(default=24000, ge=1, description="模拟 GPU 总显存 (MB)")
    poll_interval: float = Field(default=1.0, gt=0, description="探测轮询间隔（秒）")
    history_size: int = Field(default=30, ge=2, le=1000, description="用于趋势预测的历史快照数")
    forecast_horizon: float = Field(default=5.0, ge=0, description="准入时使用的预测时长（秒）")
    forecast_horizon_scale: float = Field(default=30.0, gt=0, description="单样本时置信度衰减尺度（秒）")


class PrioritySettings(BaseSettings):
    """动态优先级配置"""
    model_config = SettingsConfigDict(
        env_prefix="PRIORITY_",
        extra="ignore"
    )

    base_weight: float = Field(default=1.0, ge=0, description="基础优先级权重")
    signal_scale: float = Field(default=5.0, ge=0, description="实时信号总体缩放")
    urgency_weight: float = Field(default=0.4, ge=0, description="紧迫度权重")
    complexity_weight: float = Field(default=0.1, ge=0, description="复杂度权重")
    resource_fit_weight: float = Field(default=0.2, ge=0, description="资源适配度权重")
    feedback_weight: float = Field(default=0.3, ge=0, description="反馈加成权重")
    complexity_direction: str = Field(
        default="favor_light",
        description="复杂度方向: favor_heavy（资源空闲时优先重任务）, favor_light（优先轻任务以提升吞吐）",
    )
    urgency_tau: float = Field(default=300.0, gt=0, description="紧迫度指数衰减时间常数（秒）")
    feedback_half_life: float = Field(default=86400.0, gt=0, description="反馈时效半衰期（秒）")

    @field_validator("complexity_direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        allowed = {"favor_heavy", "favor_light"}
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"复杂度方向必须是 {allowed} 之一")
        return v


class QueueSettings(BaseSettings):
    """任务队列配置"""
    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        extra="ignore"
    )

    rebalance_threshold: float = Field(default=0.9, gt=0, le=1.0, description="触发再平衡的负载比例")
    rebalance_priority_floor: float = Field(default=1.0, description="再平衡时低于此优先级的任务视为非关键")


class AdmissionSettings(BaseSettings):
    """准入与降级配置"""
    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        extra="ignore"
    )

    memory_safety_margin: float = Field(default=0.0, ge=0, lt=1.0, description="显存安全余量（占总显存比例）")
    forecast_min_confidence: float = Field(default=0.5, ge=0, le=1.0, description="采用预测值的最低置信度")
    max_chunks: int = Field(default=8, ge=1, le=64, description="最大分块数")
    chunk_overhead: float = Field(default=0.05, ge=0, le=1.0, description="每个分块的额外显存开销比例")
    chunk_quality_factor: float = Field(default=0.98, gt=0, le=1.0, description="每多一个分块的质量折损系数")
    starvation_ticks: int = Field(default=50, ge=1, description="判定调度饥饿的周期数")
    reject_unknown_dependencies: bool = Field(default=False, description="提交时拒绝指向未知任务的依赖")


class ExecutorSettings(BaseSettings):
    """执行器配置"""
    model_config = SettingsConfigDict(
        env_prefix="EXECUTOR_",
        extra="ignore"
    )

    max_timeout: int = Field(default=86400, ge=1, description="允许声明的最大超时（秒）")
    simulated_seconds_per_unit: float = Field(default=2.0, ge=0, description="模拟执行时每单位资源占用的耗时（秒）")


class FeedbackSettings(BaseSettings):
    """反馈整合配置"""
    model_config = SettingsConfigDict(
        env_prefix="FEEDBACK_",
        extra="ignore"
    )

    window_size: int = Field(default=1000, ge=1, description="滚动窗口最大记录数")
    window_seconds: float = Field(default=86400.0, gt=0, description="滚动窗口时长（秒）")
    batch_size: int = Field(default=50, ge=1, description="批量折叠阈值")
    flush_interval: float = Field(default=10.0, gt=0, description="批量折叠时间间隔（秒）")
    context_pool_size: int = Field(default=256, ge=1, description="上下文池容量")
    context_max_age: float = Field(default=3600.0, gt=0, description="上下文最大存活时间（秒）")
    context_min_hits: int = Field(default=2, ge=0, description="超龄上下文保留所需的最少访问次数")


class WebhookSettings(BaseSettings):
    """通知回调配置"""
    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
        extra="ignore"
    )

    default_url: Optional[str] = Field(default=None, description="全局事件回调 URL")
    secret: Optional[str] = Field(default=None, description="回调签名密钥")
    timeout: float = Field(default=30.0, gt=0, description="请求超时（秒）")
    max_retries: int = Field(default=3, ge=0, le=10, description="最大重试次数")
    retry_delay: float = Field(default=5.0, ge=0, description="初始重试延迟（秒）")


class StoreSettings(BaseSettings):
    """任务存储配置"""
    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        extra="ignore"
    )

    retention_seconds: float = Field(default=86400.0, gt=0, description="终态任务保留时长（秒）")
    min_access_count: int = Field(default=0, ge=0, description="超龄后仍保留所需的访问次数")
    max_tasks: int = Field(default=100000, ge=100, description="最大任务数")


class LoggingSettings(BaseSettings):
    """日志配置"""
    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="日志级别")
    format: str = Field(default="json", description="日志格式: json, console")
    file_path: Optional[str] = Field(default=None, description="日志文件路径")
    max_size_mb: int = Field(default=100, ge=1, le=1000, description="日志文件最大大小 (MB)")
    backup_count: int = Field(default=7, ge=1, le=30, description="保留日志文件数")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"日志级别必须是 {allowed} 之一")
        return v


class Settings(BaseSettings):
    """
    主配置类

    层级:
    1. 环境变量 (最高优先级)
    2. .env 文件
    3. 默认值 (最低优先级)

    使用示例:
    >>> settings = Settings()
    >>> print(settings.priority.urgency_weight)
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 应用基础配置
    app_name: str = Field(default="DediGPU", description="应用名称")
    app_version: str = Field(default="0.1.0", description="应用版本")
    debug: bool = Field(default=False, description="调试模式")
    environment: str = Field(default="development", description="运行环境: development, staging, production")

    # API 配置
    api_host: str = Field(default="0.0.0.0", description="API 监听地址")
    api_port: int = Field(default=8000, ge=1, le=65535, description="API 监听端口")
    api_prefix: str = Field(default="/api/v1", description="API 路径前缀")
    cors_origins: str = Field(default="*", description="CORS 允许的源，逗号分隔")

    # 调度循环
    tick_interval_ms: int = Field(default=100, ge=1, description="调度轮询间隔（毫秒）")
    models_yaml_path: Optional[str] = Field(default=None, description="模型变体定义 YAML 文件")

    # 子配置
    redis: RedisSettings = Field(default_factory=RedisSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    priority: PrioritySettings = Field(default_factory=PrioritySettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    admission: AdmissionSettings = Field(default_factory=AdmissionSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    feedback: FeedbackSettings = Field(default_factory=FeedbackSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"环境必须是 {allowed} 之一")
        return v

    @model_validator(mode="after")
    def validate_weights(self) -> "Settings":
        p = self.priority
        total = p.urgency_weight + p.complexity_weight + p.resource_fit_weight + p.feedback_weight
        if total <= 0:
            raise ValueError("优先级因子权重之和必须大于 0")
        return self

    @property
    def cors_origin_list(self) -> List[str]:
        """解析 CORS 源列表"""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def display_config(self) -> dict:
        """返回脱敏后的配置（用于日志/调试）"""
        return {
            "app_name": self.app_name,
            "app_version": self.app_version,
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "redis_enabled": self.redis.enabled,
            "redis_host": self.redis.host,
            "gpu_device_index": self.monitor.device_index,
            "mock_mode": self.monitor.mock_mode,
            "complexity_direction": self.priority.complexity_direction,
            "webhook_configured": bool(self.webhook.default_url),
        }


@lru_cache()
def get_settings() -> Settings:
    """获取配置（缓存）"""
    return Settings()
