"""
API 依赖注入

调度器实例挂在 app.state 上，由应用生命周期创建和关闭
"""
from fastapi import Depends, Request

from core.config import Settings
from core.models.registry import ModelRegistry
from core.scheduler import Scheduler
from core.services.task_service import TaskService


def get_app_settings(request: Request) -> Settings:
    """获取应用配置"""
    return request.app.state.settings


def get_scheduler(request: Request) -> Scheduler:
    """获取调度器实例"""
    return request.app.state.scheduler


def get_registry(scheduler: Scheduler = Depends(get_scheduler)) -> ModelRegistry:
    """获取模型变体注册表"""
    return scheduler.registry


def get_task_service(scheduler: Scheduler = Depends(get_scheduler)) -> TaskService:
    """获取任务服务"""
    return TaskService(scheduler)
