"""
全局错误处理

把调度器错误映射为统一响应格式与错误码
"""
from typing import Dict, Tuple, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from api.schemas.response import error_response
from core.errors import (
    DependencyUnresolvedError,
    DuplicateTaskError,
    InvalidStateTransition,
    ModelNotFoundError,
    SchedulerError,
    TaskNotFoundError,
)

logger = structlog.get_logger(__name__)


class ErrorCode:
    """错误码定义"""
    # 请求错误 (400xx)
    BAD_REQUEST = 40000
    PARAMETER_INVALID = 40002
    TASK_NOT_CANCELLABLE = 40003

    # 未找到 (404xx)
    MODEL_NOT_FOUND = 40401
    TASK_NOT_FOUND = 40402

    # 冲突 (409xx)
    TASK_DUPLICATE = 40901
    INVALID_TRANSITION = 40902

    # 无法处理 (422xx)
    DEPENDENCY_UNRESOLVED = 42201
    VALIDATION_FAILED = 42200

    # 服务器错误 (500xx)
    INTERNAL_ERROR = 50000
    SCHEDULER_ERROR = 50001


# 异常类型 -> (HTTP 状态码, 错误码, 消息)
ERROR_MAPPING: Dict[Type[SchedulerError], Tuple[int, int, str]] = {
    TaskNotFoundError: (404, ErrorCode.TASK_NOT_FOUND, "任务未找到"),
    ModelNotFoundError: (404, ErrorCode.MODEL_NOT_FOUND, "模型未找到"),
    DuplicateTaskError: (409, ErrorCode.TASK_DUPLICATE, "任务 ID 冲突"),
    InvalidStateTransition: (409, ErrorCode.INVALID_TRANSITION, "无效的状态转换"),
    DependencyUnresolvedError: (422, ErrorCode.DEPENDENCY_UNRESOLVED, "任务依赖无法满足"),
}


def resolve_error(exc: SchedulerError) -> Tuple[int, int, str]:
    """按异常类型（含父类）查找映射"""
    for cls in type(exc).__mro__:
        if cls in ERROR_MAPPING:
            return ERROR_MAPPING[cls]
    return 500, ErrorCode.SCHEDULER_ERROR, "调度器错误"


async def scheduler_error_handler(request: Request, exc: SchedulerError):
    """调度器错误处理"""
    status_code, code, message = resolve_error(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "scheduler_error_response",
        path=request.url.path,
        cause=exc.cause,
        status_code=status_code,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response(
            message=message,
            code=code,
            error_type=type(exc).__name__,
            detail=str(exc),
            cause=exc.cause,
            retriable=exc.retriable,
        ),
    )


async def value_error_handler(request: Request, exc: ValueError):
    """业务校验错误（如取消已结束的任务）"""
    logger.warning("bad_request", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=400,
        content=error_response(
            message="请求无法处理",
            code=ErrorCode.BAD_REQUEST,
            error_type="ValueError",
            detail=str(exc),
        ),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """请求参数校验错误"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or None
    logger.warning("request_validation_failed", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=422,
        content=error_response(
            message="请求参数无效",
            code=ErrorCode.VALIDATION_FAILED,
            error_type="ValidationError",
            detail=first.get("msg", "invalid request"),
            field=field,
        ),
    )


def register_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    """注册全局异常处理器"""

    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content=error_response(
                message="内部服务器错误",
                code=ErrorCode.INTERNAL_ERROR,
                error_type="InternalError",
                detail=str(exc) if debug else "发生未预期的错误，请联系管理员",
            ),
        )

    app.add_exception_handler(SchedulerError, scheduler_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
