"""
回调模块

提供任务事件的 Webhook 通知
"""
from .webhook import (
    CallbackEvent,
    CallbackRecord,
    TaskNotifier,
    WebhookClient,
    WebhookConfig,
    parse_events,
    sign_payload,
)

__all__ = [
    "CallbackEvent",
    "CallbackRecord",
    "TaskNotifier",
    "WebhookClient",
    "WebhookConfig",
    "parse_events",
    "sign_payload",
]
