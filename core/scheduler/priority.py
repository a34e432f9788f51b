"""
动态优先级计算

dynamic = base_weight * base_priority
          + signal_scale * (w_u * 紧迫度 + w_c * 复杂度 + w_r * 资源适配度 + w_f * 反馈加成)

四个因子均归一化到 0-1。计算是纯函数：同样的（任务、反馈窗口、快照、时刻）
总是得到同样的结果，且不修改任务，由调用方写回 dynamic_priority。
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
import math

from .resource_monitor import ResourceSnapshot
from .task import Task


class ComplexityDirection(str, Enum):
    """复杂度因子方向"""
    FAVOR_HEAVY = "favor_heavy"   # 资源空闲时优先重任务
    FAVOR_LIGHT = "favor_light"   # 优先轻任务以提升吞吐


@dataclass(frozen=True)
class PriorityWeights:
    """优先级权重配置"""
    base_weight: float = 1.0
    signal_scale: float = 5.0
    urgency: float = 0.4
    complexity: float = 0.1
    resource_fit: float = 0.2
    feedback: float = 0.3
    complexity_direction: ComplexityDirection = ComplexityDirection.FAVOR_LIGHT
    urgency_tau: float = 300.0
    feedback_half_life: float = 86400.0

    @classmethod
    def from_settings(cls, settings) -> "PriorityWeights":
        """从 PrioritySettings 构建"""
        return cls(
            base_weight=settings.base_weight,
            signal_scale=settings.signal_scale,
            urgency=settings.urgency_weight,
            complexity=settings.complexity_weight,
            resource_fit=settings.resource_fit_weight,
            feedback=settings.feedback_weight,
            complexity_direction=ComplexityDirection(settings.complexity_direction),
            urgency_tau=settings.urgency_tau,
            feedback_half_life=settings.feedback_half_life,
        )


@dataclass(frozen=True)
class PriorityFactors:
    """优先级因子分解"""
    urgency: float
    complexity: float
    resource_fit: float
    feedback: float
    priority: float

    def to_dict(self) -> dict:
        return {
            "urgency": round(self.urgency, 4),
            "complexity": round(self.complexity, 4),
            "resource_fit": round(self.resource_fit, 4),
            "feedback": round(self.feedback, 4),
            "priority": round(self.priority, 4),
        }


def urgency_factor(deadline: Optional[float], now: float, tau: float) -> float:
    """截止时间已到为 1，否则随剩余时间指数衰减；无截止时间为 0"""
    if deadline is None:
        return 0.0
    remaining = deadline - now
    if remaining <= 0:
        return 1.0
    return math.exp(-remaining / tau)


def complexity_factor(
    resource_intensity: float,
    direction: ComplexityDirection,
    capacity: float = 1.0,
) -> float:
    """资源强度相对 GPU 容量归一化，方向可配置"""
    normalized = max(0.0, min(resource_intensity / capacity, 1.0)) if capacity > 0 else 1.0
    if direction == ComplexityDirection.FAVOR_HEAVY:
        return normalized
    return 1.0 - normalized


def resource_fit_factor(resource_intensity: float, snapshot: ResourceSnapshot) -> float:
    """能轻松放入当前空闲显存时更高，放不下为 0"""
    free = snapshot.free_fraction
    if free <= 0 or resource_intensity > free:
        return 0.0
    return 1.0 - resource_intensity / free


def feedback_factor(
    category: str,
    feedback: Iterable,
    now: float,
    half_life: float,
) -> float:
    """
    同类别近期正向反馈加成

    评分 1-5 映射到 [-1, 1]，按半衰期做时效加权平均，负值截断为 0。
    总权重不足 1 时按 1 归一化：只有陈旧反馈时加成随时间衰减，
    而不是被平均回满额。
    """
    weighted = 0.0
    total_weight = 0.0
    for record in feedback:
        if record.category != category:
            continue
        age = max(0.0, now - record.timestamp)
        weight = 0.5 ** (age / half_life)
        weighted += weight * record.centered_rating
        total_weight += weight

    if total_weight <= 0:
        return 0.0
    return max(0.0, min(weighted / max(total_weight, 1.0), 1.0))


class PriorityCalculator:
    """动态优先级计算器（无状态，可重入）"""

    def __init__(self, weights: Optional[PriorityWeights] = None):
        self.weights = weights or PriorityWeights()

    def explain(
        self,
        task: Task,
        feedback: Iterable,
        snapshot: ResourceSnapshot,
        now: float,
    ) -> PriorityFactors:
        """计算并返回各因子"""
        w = self.weights
        urgency = urgency_factor(task.deadline, now, w.urgency_tau)
        complexity = complexity_factor(task.resource_intensity, w.complexity_direction)
        fit = resource_fit_factor(task.resource_intensity, snapshot)
        boost = feedback_factor(task.category, feedback, now, w.feedback_half_life)

        signal = (
            w.urgency * urgency
            + w.complexity * complexity
            + w.resource_fit * fit
            + w.feedback * boost
        )
        priority = w.base_weight * task.base_priority + w.signal_scale * signal

        return PriorityFactors(
            urgency=urgency,
            complexity=complexity,
            resource_fit=fit,
            feedback=boost,
            priority=priority,
        )

    def compute_priority(
        self,
        task: Task,
        feedback: Iterable,
        snapshot: ResourceSnapshot,
        now: float,
    ) -> float:
        return self.explain(task, feedback, snapshot, now).priority
