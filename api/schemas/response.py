"""
统一响应格式
"""
from pydantic import BaseModel, Field
from typing import TypeVar, Generic, Optional, Any
from datetime import datetime, timezone
import uuid

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


class ErrorDetail(BaseModel):
    """错误详情"""
    type: str = Field(..., description="错误类型")
    detail: str = Field(..., description="错误详细说明")
    cause: Optional[str] = Field(None, description="错误原因标识")
    retriable: bool = Field(default=False, description="是否可重试")
    field: Optional[str] = Field(None, description="相关字段")


class APIResponse(BaseModel, Generic[T]):
    """
    统一 API 响应格式

    成功响应:
    {
        "success": true,
        "code": 200,
        "message": "操作成功",
        "data": { ... },
        "timestamp": "2026-01-30T10:00:00Z",
        "request_id": "req_abc123"
    }

    错误响应:
    {
        "success": false,
        "code": 40901,
        "message": "任务 ID 冲突",
        "error": { ... },
        "timestamp": "2026-01-30T10:00:00Z",
        "request_id": "req_abc123"
    }
    """
    success: bool = Field(..., description="请求是否成功")
    code: int = Field(..., description="响应码")
    message: str = Field(..., description="响应消息")
    data: Optional[T] = Field(None, description="响应数据")
    error: Optional[ErrorDetail] = Field(None, description="错误详情")
    timestamp: datetime = Field(default_factory=utcnow, description="响应时间")
    request_id: str = Field(default_factory=new_request_id, description="请求 ID")


class PaginationInfo(BaseModel):
    """分页信息"""
    page: int = Field(..., description="当前页码")
    page_size: int = Field(..., description="每页数量")
    total_items: int = Field(..., description="总条目数")
    total_pages: int = Field(..., description="总页数")


def success_response(
    data: Any = None,
    message: str = "操作成功",
    code: int = 200,
) -> dict:
    """构建成功响应"""
    return {
        "success": True,
        "code": code,
        "message": message,
        "data": data,
        "timestamp": utcnow().isoformat().replace("+00:00", "Z"),
        "request_id": new_request_id(),
    }


def error_response(
    message: str,
    code: int,
    error_type: str = "Error",
    detail: str = "",
    cause: Optional[str] = None,
    retriable: bool = False,
    field: Optional[str] = None,
) -> dict:
    """构建错误响应"""
    return {
        "success": False,
        "code": code,
        "message": message,
        "error": {
            "type": error_type,
            "detail": detail,
            "cause": cause,
            "retriable": retriable,
            "field": field,
        },
        "timestamp": utcnow().isoformat().replace("+00:00", "Z"),
        "request_id": new_request_id(),
    }
