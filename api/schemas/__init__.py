# API Pydantic 数据模型
from .response import APIResponse, ErrorDetail, PaginationInfo
from .task import (
    TaskCreate,
    TaskBatchCreate,
    TaskResponse,
    TaskListResponse,
    TaskBatchResponse,
    TaskResultResponse,
    FeedbackCreate,
    FeedbackResponse,
)
from .model import ModelInfo, ModelListResponse, FallbackListResponse
from .system import ResourceStatusResponse, ForecastResponse, QueueStatusResponse

__all__ = [
    "APIResponse",
    "ErrorDetail",
    "PaginationInfo",
    "TaskCreate",
    "TaskBatchCreate",
    "TaskResponse",
    "TaskListResponse",
    "TaskBatchResponse",
    "TaskResultResponse",
    "FeedbackCreate",
    "FeedbackResponse",
    "ModelInfo",
    "ModelListResponse",
    "FallbackListResponse",
    "ResourceStatusResponse",
    "ForecastResponse",
    "QueueStatusResponse",
]
