"""
模型变体相关数据模型
"""
from pydantic import BaseModel, Field
from typing import List, Dict, Any

from core.models.registry import ModelVariant


class ModelInfo(BaseModel):
    """模型变体信息"""
    name: str = Field(..., description="变体名称（提交任务时的 model 字段）")
    family: str = Field(..., description="模型系列")
    display_name: str = Field(..., description="显示名称")
    precision: str = Field(..., description="精度 (fp32, fp16, bf16, int8, int4)")
    memory_ratio: float = Field(..., description="相对完整模型的显存比例")
    quality: float = Field(..., description="预估输出质量 0-1")
    description: str = Field(default="", description="模型描述")
    config: Dict[str, Any] = Field(default_factory=dict, description="执行端配置")

    @classmethod
    def from_variant(cls, variant: ModelVariant) -> "ModelInfo":
        return cls(**variant.to_dict(), config=variant.config)


class ModelListResponse(BaseModel):
    """模型列表响应"""
    models: List[ModelInfo] = Field(..., description="模型变体列表")
    families: List[str] = Field(..., description="模型系列")
    total: int = Field(..., description="变体总数")


class FallbackListResponse(BaseModel):
    """降级候选响应"""
    name: str = Field(..., description="请求的模型变体")
    fallbacks: List[ModelInfo] = Field(..., description="更小的同系列变体，按质量降序")
