# 模型变体管理模块
from .registry import ModelRegistry, ModelVariant, Precision, BUILTIN_FAMILIES

__all__ = [
    "ModelRegistry",
    "ModelVariant",
    "Precision",
    "BUILTIN_FAMILIES",
]
