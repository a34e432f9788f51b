"""
准入与降级控制

对每个候选任务给出决策：立即运行、换用更小的模型变体、拆分为分块、或推迟。
只有本模块决定任务能否运行；队列只负责排序，执行器只负责运行。

可用显存 = min(当前快照空闲比例, 置信度足够时的预测空闲比例) - 安全余量。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple
import math

import structlog

from core.models.registry import ModelRegistry
from .resource_monitor import PredictedSnapshot, ResourceSnapshot
from .task import Task

logger = structlog.get_logger(__name__)


class AdmissionOutcome(str, Enum):
    """准入结果"""
    DISPATCH = "dispatch"
    VARIANT = "variant"
    SPLIT = "split"
    DEFER = "defer"


class FallbackKind(str, Enum):
    """降级方案类型"""
    VARIANT = "variant"
    CHUNK = "chunk"
    DEFER = "defer"


@dataclass(frozen=True)
class FallbackOption:
    """单个降级方案"""
    kind: FallbackKind
    resource_need: float = 0.0          # 单次运行所需显存比例
    projected_quality: float = 0.0
    model_id: Optional[str] = None      # variant 方案的目标变体
    chunk_count: int = 1                # chunk 方案的分块数

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "resource_need": round(self.resource_need, 4),
            "projected_quality": round(self.projected_quality, 4),
            "model_id": self.model_id,
            "chunk_count": self.chunk_count,
        }


DEFER_OPTION = FallbackOption(kind=FallbackKind.DEFER)


@dataclass(frozen=True)
class DegradationStrategy:
    """
    降级策略（临时对象）

    仅在完整请求无法准入时为单个任务创建，使用后即丢弃。
    options 按预估质量降序排列，defer 永远在最后。
    """
    task_id: str
    resource_ceiling: float
    min_quality: float
    options: Tuple[FallbackOption, ...] = field(default_factory=tuple)

    @property
    def best(self) -> FallbackOption:
        return self.options[0] if self.options else DEFER_OPTION

    @property
    def viable(self) -> bool:
        return self.best.kind != FallbackKind.DEFER

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "resource_ceiling": round(self.resource_ceiling, 4),
            "min_quality": self.min_quality,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass(frozen=True)
class AdmissionDecision:
    """准入决策"""
    outcome: AdmissionOutcome
    task_id: str
    available: float
    resource_need: float
    option: Optional[FallbackOption] = None
    strategy: Optional[DegradationStrategy] = None
    reason: str = ""

    @property
    def admitted(self) -> bool:
        return self.outcome != AdmissionOutcome.DEFER

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "task_id": self.task_id,
            "available": round(self.available, 4),
            "resource_need": round(self.resource_need, 4),
            "option": self.option.to_dict() if self.option else None,
            "reason": self.reason,
        }


class AdmissionController:
    """
    准入与降级控制器

    Args:
        registry: 模型变体注册表
        memory_safety_margin: 预留的显存比例
        forecast_min_confidence: 采纳预测所需的最低置信度
        max_chunks: 最大分块数
        chunk_overhead: 每个分块额外的显存开销比例
        chunk_quality_factor: 每多一个分块质量乘以该系数
    """

    def __init__(
        self,
        registry: ModelRegistry,
        memory_safety_margin: float = 0.0,
        forecast_min_confidence: float = 0.5,
        max_chunks: int = 8,
        chunk_overhead: float = 0.05,
        chunk_quality_factor: float = 0.98,
    ):
        self.registry = registry
        self.memory_safety_margin = memory_safety_margin
        self.forecast_min_confidence = forecast_min_confidence
        self.max_chunks = max_chunks
        self.chunk_overhead = chunk_overhead
        self.chunk_quality_factor = chunk_quality_factor

    @classmethod
    def from_settings(cls, settings, registry: ModelRegistry) -> "AdmissionController":
        """从 AdmissionSettings 构建"""
        return cls(
            registry,
            memory_safety_margin=settings.memory_safety_margin,
            forecast_min_confidence=settings.forecast_min_confidence,
            max_chunks=settings.max_chunks,
            chunk_overhead=settings.chunk_overhead,
            chunk_quality_factor=settings.chunk_quality_factor,
        )

    # ---- 资源与需求 ----

    def available_fraction(
        self,
        snapshot: ResourceSnapshot,
        forecast: Optional[PredictedSnapshot] = None,
    ) -> float:
        """计算可用于准入的显存比例"""
        available = snapshot.free_fraction
        if forecast is not None and forecast.confidence >= self.forecast_min_confidence:
            available = min(available, forecast.free_fraction)
        return max(0.0, available - self.memory_safety_margin)

    def effective_model(self, task: Task) -> str:
        """任务当前实际使用的模型"""
        return task.model_variant or task.model_id

    def requirement(self, task: Task) -> Tuple[float, float]:
        """
        任务按当前模型运行的需求

        Returns:
            (显存比例, 预估质量)
        """
        requested = self.registry.get(task.model_id)
        current = self.registry.get(self.effective_model(task))
        if requested is None or current is None:
            return task.resource_intensity, 1.0
        need = task.resource_intensity * current.memory_ratio / requested.memory_ratio
        return need, current.quality

    # ---- 降级策略 ----

    def _variant_options(self, task: Task, ceiling: float) -> List[FallbackOption]:
        requested = self.registry.get(task.model_id)
        if requested is None:
            return []

        options = []
        for variant in self.registry.fallbacks_for(self.effective_model(task)):
            need = task.resource_intensity * variant.memory_ratio / requested.memory_ratio
            if need <= ceiling and variant.quality >= task.quality_requirement:
                options.append(FallbackOption(
                    kind=FallbackKind.VARIANT,
                    resource_need=need,
                    projected_quality=variant.quality,
                    model_id=variant.name,
                ))
        return options

    def _chunk_option(self, need: float, quality: float, task: Task, ceiling: float) -> Optional[FallbackOption]:
        if ceiling <= 0 or need <= 0:
            return None

        n = max(2, math.ceil(need / ceiling))
        while n <= self.max_chunks:
            per_chunk = need / n * (1 + self.chunk_overhead)
            if per_chunk <= ceiling:
                projected = quality * self.chunk_quality_factor ** (n - 1)
                if projected < task.quality_requirement:
                    return None
                return FallbackOption(
                    kind=FallbackKind.CHUNK,
                    resource_need=per_chunk,
                    projected_quality=projected,
                    chunk_count=n,
                )
            n += 1
        return None

    def build_strategy(
        self,
        task: Task,
        ceiling: float,
        chunk_need: Optional[float] = None,
    ) -> DegradationStrategy:
        """
        构建降级策略

        Args:
            task: 任务
            ceiling: 单次运行允许的显存上限
            chunk_need: 分块时需要覆盖的显存（默认为完整需求）
        """
        need, quality = self.requirement(task)
        options = self._variant_options(task, ceiling)

        chunk = self._chunk_option(chunk_need if chunk_need is not None else need, quality, task, ceiling)
        if chunk is not None:
            options.append(chunk)

        options.sort(key=lambda o: -o.projected_quality)
        options.append(DEFER_OPTION)

        return DegradationStrategy(
            task_id=task.id,
            resource_ceiling=ceiling,
            min_quality=task.quality_requirement,
            options=tuple(options),
        )

    def _decide(self, task: Task, option: FallbackOption, available: float, need: float,
                strategy: DegradationStrategy, reason: str) -> AdmissionDecision:
        outcome = {
            FallbackKind.VARIANT: AdmissionOutcome.VARIANT,
            FallbackKind.CHUNK: AdmissionOutcome.SPLIT,
            FallbackKind.DEFER: AdmissionOutcome.DEFER,
        }[option.kind]
        return AdmissionDecision(
            outcome=outcome,
            task_id=task.id,
            available=available,
            resource_need=need,
            option=option,
            strategy=strategy,
            reason=reason,
        )

    def admit(
        self,
        task: Task,
        snapshot: ResourceSnapshot,
        forecast: Optional[PredictedSnapshot] = None,
    ) -> AdmissionDecision:
        """
        准入判断

        Args:
            task: 候选任务（依赖已就绪）
            snapshot: 当前资源快照
            forecast: 预测快照

        Returns:
            准入决策
        """
        available = self.available_fraction(snapshot, forecast)
        need, _ = self.requirement(task)
        fits = need <= available

        if fits and not task.preemptively_degraded:
            return AdmissionDecision(
                outcome=AdmissionOutcome.DISPATCH,
                task_id=task.id,
                available=available,
                resource_need=need,
                reason="fits",
            )

        strategy = self.build_strategy(task, available)

        if task.preemptively_degraded:
            # 再平衡时被标记的任务优先使用降级方案；放得下的任务只换更小变体，不分块
            if fits:
                variant = next((o for o in strategy.options if o.kind == FallbackKind.VARIANT), None)
                if variant is not None:
                    return self._decide(task, variant, available, need, strategy, "rebalance")
                return AdmissionDecision(
                    outcome=AdmissionOutcome.DISPATCH,
                    task_id=task.id,
                    available=available,
                    resource_need=need,
                    reason="no_fallback",
                )
            if strategy.viable:
                return self._decide(task, strategy.best, available, need, strategy, "rebalance")

        decision = self._decide(
            task, strategy.best, available, need, strategy,
            "insufficient_memory" if strategy.viable else "no_viable_option",
        )
        logger.debug(
            "admission_degraded",
            task_id=task.id,
            outcome=decision.outcome.value,
            need=round(need, 4),
            available=round(available, 4),
        )
        return decision

    def degrade_after_exhaustion(
        self,
        task: Task,
        snapshot: ResourceSnapshot,
        completed_fraction: float = 0.0,
    ) -> AdmissionDecision:
        """
        运行中资源耗尽后的追溯降级

        以失败请求的一半作为新的显存上限，对剩余部分重新选择方案。
        """
        need, _ = self.requirement(task)
        ceiling = need / 2
        remaining = need * (1 - max(0.0, min(completed_fraction, 1.0)))
        strategy = self.build_strategy(task, ceiling, chunk_need=remaining)

        logger.warning(
            "resource_exhaustion_degradation",
            task_id=task.id,
            ceiling=round(ceiling, 4),
            completed_fraction=completed_fraction,
            option=strategy.best.kind.value,
        )
        return self._decide(
            task, strategy.best, snapshot.free_fraction, need, strategy, "resource_exhaustion"
        )

    # ---- 分块 ----

    def split_task(self, task: Task, option: FallbackOption) -> List[Task]:
        """
        将任务拆分为分块任务

        分块 i 依赖分块 i-1，保证按序合并；分块 0 继承父任务的依赖。
        分块的质量下限按拆分造成的质量衰减折算，整体质量仍不低于父任务下限。
        """
        n = option.chunk_count
        chunk_floor = min(1.0, task.quality_requirement / (self.chunk_quality_factor ** (n - 1)))

        chunks: List[Task] = []
        previous: Optional[str] = None
        for i in range(n):
            chunk = Task(
                id=f"{task.id}.chunk-{i}",
                model_id=self.effective_model(task),
                payload={"payload": task.payload, "chunk_index": i, "chunk_count": n},
                base_priority=task.base_priority,
                resource_intensity=option.resource_need,
                quality_requirement=chunk_floor,
                deadline=task.deadline,
                dependencies=task.dependencies if previous is None else frozenset({previous}),
                category=task.category,
                context_id=task.context_id,
                timeout=task.timeout,
                parent_id=task.id,
                chunk_index=i,
            )
            chunks.append(chunk)
            previous = chunk.id

        logger.info(
            "task_split",
            task_id=task.id,
            chunk_count=n,
            per_chunk_need=round(option.resource_need, 4),
            projected_quality=round(option.projected_quality, 4),
        )
        return chunks
