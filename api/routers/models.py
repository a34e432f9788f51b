"""
模型变体查询 API 路由
"""
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from api.dependencies import get_registry
from api.schemas.model import FallbackListResponse, ModelInfo, ModelListResponse
from api.schemas.response import APIResponse
from core.models.registry import ModelRegistry, Precision

router = APIRouter()


@router.get("", response_model=APIResponse[ModelListResponse])
async def list_models(
    family: Optional[str] = Query(None, description="按模型系列过滤"),
    precision: Optional[Precision] = Query(None, description="按精度过滤"),
    registry: ModelRegistry = Depends(get_registry),
):
    """获取所有已注册的模型变体"""
    variants = registry.get_by_family(family) if family else registry.get_all()
    if precision:
        variants = [v for v in variants if v.precision == precision]

    models = [ModelInfo.from_variant(v) for v in variants]
    return APIResponse(
        success=True,
        code=200,
        message="获取模型列表成功",
        data=ModelListResponse(
            models=models,
            families=registry.list_families(),
            total=len(models),
        ),
    )


@router.get("/summary")
async def get_models_summary(registry: ModelRegistry = Depends(get_registry)):
    """获取模型注册表摘要"""
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=registry.get_summary(),
    )


@router.get("/{name}", response_model=APIResponse[ModelInfo])
async def get_model(
    name: str = Path(..., description="模型变体名称"),
    registry: ModelRegistry = Depends(get_registry),
):
    """获取单个模型变体"""
    variant = registry.require(name)
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=ModelInfo.from_variant(variant),
    )


@router.get("/{name}/fallbacks", response_model=APIResponse[FallbackListResponse])
async def get_model_fallbacks(
    name: str = Path(..., description="模型变体名称"),
    registry: ModelRegistry = Depends(get_registry),
):
    """获取显存不足时可用的降级变体"""
    registry.require(name)
    return APIResponse(
        success=True,
        code=200,
        message="查询成功",
        data=FallbackListResponse(
            name=name,
            fallbacks=[ModelInfo.from_variant(v) for v in registry.fallbacks_for(name)],
        ),
    )
