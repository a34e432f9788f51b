"""
模型变体注册表

管理模型系列及其低精度 / 小尺寸变体。准入控制在显存不足时
通过注册表查找可替代的变体（相对显存需求更低、质量可预估）。
"""
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import yaml
import structlog

from core.errors import ModelNotFoundError

logger = structlog.get_logger(__name__)


class Precision(str, Enum):
    """权重精度"""
    FP32 = "fp32"
    FP16 = "fp16"
    BF16 = "bf16"
    INT8 = "int8"
    INT4 = "int4"


@dataclass
class ModelVariant:
    """模型变体"""
    name: str                           # 变体名称（唯一标识，即 model_id）
    family: str                         # 所属模型系列
    display_name: str = ""              # 显示名称
    precision: Precision = Precision.FP16

    # 相对于系列中完整模型的显存需求比例
    memory_ratio: float = 1.0
    # 预估输出质量 0-1
    quality: float = 1.0

    description: str = ""
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "name": self.name,
            "family": self.family,
            "display_name": self.display_name or self.name,
            "precision": self.precision.value,
            "memory_ratio": self.memory_ratio,
            "quality": self.quality,
            "description": self.description,
        }


# 内置模型系列定义
BUILTIN_FAMILIES: Dict[str, Dict[str, Any]] = {
    "llama-3-8b": {
        "display_name": "Llama 3 8B Instruct",
        "variants": [
            {"name": "llama-3-8b", "precision": "fp16", "memory_ratio": 1.0, "quality": 1.0},
            {"name": "llama-3-8b-int8", "precision": "int8", "memory_ratio": 0.55, "quality": 0.95},
            {"name": "llama-3-8b-int4", "precision": "int4", "memory_ratio": 0.3, "quality": 0.86},
        ],
    },
    "mistral-7b": {
        "display_name": "Mistral 7B Instruct",
        "variants": [
            {"name": "mistral-7b", "precision": "fp16", "memory_ratio": 1.0, "quality": 1.0},
            {"name": "mistral-7b-int8", "precision": "int8", "memory_ratio": 0.55, "quality": 0.94},
            {"name": "mistral-7b-int4", "precision": "int4", "memory_ratio": 0.3, "quality": 0.85},
        ],
    },
    "codellama-13b": {
        "display_name": "Code Llama 13B",
        "variants": [
            {"name": "codellama-13b", "precision": "fp16", "memory_ratio": 1.0, "quality": 1.0},
            {"name": "codellama-13b-int8", "precision": "int8", "memory_ratio": 0.52, "quality": 0.93},
            {"name": "codellama-7b", "precision": "fp16", "memory_ratio": 0.54, "quality": 0.82,
             "description": "Smaller sibling of the 13B model"},
        ],
    },
    "sdxl": {
        "display_name": "Stable Diffusion XL",
        "variants": [
            {"name": "sdxl", "precision": "fp16", "memory_ratio": 1.0, "quality": 1.0},
            {"name": "sdxl-turbo", "precision": "fp16", "memory_ratio": 0.7, "quality": 0.83},
        ],
    },
    "whisper-large": {
        "display_name": "Whisper Large v3",
        "variants": [
            {"name": "whisper-large", "precision": "fp16", "memory_ratio": 1.0, "quality": 1.0},
            {"name": "whisper-medium", "precision": "fp16", "memory_ratio": 0.5, "quality": 0.9},
            {"name": "whisper-small", "precision": "fp16", "memory_ratio": 0.2, "quality": 0.78},
        ],
    },
    "bge-large": {
        "display_name": "BGE Large Embeddings",
        "variants": [
            {"name": "bge-large", "precision": "fp32", "memory_ratio": 1.0, "quality": 1.0},
            {"name": "bge-large-fp16", "precision": "fp16", "memory_ratio": 0.5, "quality": 0.99},
        ],
    },
}


class ModelRegistry:
    """
    模型变体注册表

    内置系列定义 + 可选 YAML 文件（同名变体以 YAML 为准）。
    """

    def __init__(self, models_yaml_path: Optional[Path] = None):
        """
        初始化模型注册表

        Args:
            models_yaml_path: models.yaml 文件路径
        """
        self._variants: Dict[str, ModelVariant] = {}

        self._register_families(BUILTIN_FAMILIES)

        if models_yaml_path and Path(models_yaml_path).exists():
            with open(models_yaml_path) as f:
                data = yaml.safe_load(f) or {}
            self._register_families(data.get("families", {}))
            logger.info("model_yaml_loaded", path=str(models_yaml_path))

        logger.info(
            "model_registry_initialized",
            n_models=len(self._variants),
            families=self.list_families(),
        )

    def _register_families(self, families: Dict[str, Dict[str, Any]]):
        """注册模型系列定义"""
        for family, config in families.items():
            for entry in config.get("variants", []):
                variant = ModelVariant(
                    name=entry["name"],
                    family=family,
                    display_name=entry.get("display_name", config.get("display_name", "")),
                    precision=Precision(entry.get("precision", "fp16")),
                    memory_ratio=float(entry.get("memory_ratio", 1.0)),
                    quality=float(entry.get("quality", 1.0)),
                    description=entry.get("description", ""),
                    config=entry.get("config", {}),
                )
                self._variants[variant.name] = variant

    def register(self, variant: ModelVariant) -> None:
        """
        注册模型变体

        Args:
            variant: 模型变体
        """
        if variant.name in self._variants:
            logger.warning("model_already_registered", name=variant.name)

        self._variants[variant.name] = variant
        logger.info("model_registered", name=variant.name, family=variant.family)

    def unregister(self, name: str) -> bool:
        """注销模型变体"""
        if name in self._variants:
            del self._variants[name]
            logger.info("model_unregistered", name=name)
            return True
        return False

    def get(self, name: str) -> Optional[ModelVariant]:
        """获取模型变体，不存在则返回 None"""
        return self._variants.get(name)

    def require(self, name: str) -> ModelVariant:
        """
        获取模型变体

        Raises:
            ModelNotFoundError: 模型不存在
        """
        variant = self._variants.get(name)
        if variant is None:
            raise ModelNotFoundError(name)
        return variant

    def get_all(self) -> List[ModelVariant]:
        """获取所有模型变体"""
        return list(self._variants.values())

    def get_by_family(self, family: str) -> List[ModelVariant]:
        """按模型系列获取"""
        return [v for v in self._variants.values() if v.family == family]

    def fallbacks_for(self, name: str) -> List[ModelVariant]:
        """
        获取可替代的更小变体

        Args:
            name: 请求的模型变体

        Returns:
            同系列中显存比例更低的变体，按质量降序
        """
        requested = self._variants.get(name)
        if requested is None:
            return []

        candidates = [
            v for v in self.get_by_family(requested.family)
            if v.name != name and v.memory_ratio < requested.memory_ratio
        ]
        return sorted(candidates, key=lambda v: (-v.quality, v.memory_ratio))

    def exists(self, name: str) -> bool:
        """检查模型是否存在"""
        return name in self._variants

    def list_names(self) -> List[str]:
        """获取所有模型名称"""
        return list(self._variants.keys())

    def list_families(self) -> List[str]:
        """获取所有模型系列"""
        return sorted(set(v.family for v in self._variants.values()))

    def get_summary(self) -> Dict[str, Any]:
        """获取注册表摘要"""
        by_family: Dict[str, int] = {}
        by_precision: Dict[str, int] = {}

        for variant in self._variants.values():
            by_family[variant.family] = by_family.get(variant.family, 0) + 1
            precision = variant.precision.value
            by_precision[precision] = by_precision.get(precision, 0) + 1

        return {
            "total_models": len(self._variants),
            "by_family": by_family,
            "by_precision": by_precision,
        }
