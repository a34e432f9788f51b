"""
Webhook 回调客户端

任务事件的 HTTP 通知。调度器以 fire-and-forget 方式发出事件，
投递失败只记录日志，不影响调度。
"""
import asyncio
import hashlib
import hmac
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple
from threading import Lock

import httpx
import structlog

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class CallbackEvent(str, Enum):
    """回调事件类型"""
    TASK_SUBMITTED = "task.submitted"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_DEGRADED = "task.degraded"
    TASK_CANCELLED = "task.cancelled"
    TASK_TIMEOUT = "task.timeout"
    TASK_STARVED = "task.starved"


DEFAULT_EVENTS = [
    CallbackEvent.TASK_COMPLETED,
    CallbackEvent.TASK_FAILED,
    CallbackEvent.TASK_TIMEOUT,
    CallbackEvent.TASK_STARVED,
]


def parse_events(names: Optional[List[str]]) -> List[CallbackEvent]:
    """解析订阅事件名，未知事件忽略；未指定时使用默认事件"""
    if not names:
        return list(DEFAULT_EVENTS)
    events = []
    for name in names:
        try:
            events.append(CallbackEvent(name))
        except ValueError:
            logger.warning("callback_event_unknown", callback_event=name)
    return events


@dataclass
class WebhookConfig:
    """Webhook 配置"""
    url: str
    events: List[CallbackEvent] = field(default_factory=lambda: list(DEFAULT_EVENTS))
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 5.0  # 初始重试延迟（秒）
    retry_backoff: float = 2.0  # 重试延迟倍增因子
    secret: Optional[str] = None  # 用于签名验证


@dataclass
class CallbackRecord:
    """回调记录"""
    id: str
    task_id: str
    event: CallbackEvent
    url: str
    payload: Dict[str, Any]
    created_at: datetime
    sent_at: Optional[datetime] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    retries: int = 0
    success: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "event": self.event.value,
            "url": self.url,
            "created_at": _isoformat(self.created_at),
            "sent_at": _isoformat(self.sent_at) if self.sent_at else None,
            "response_status": self.response_status,
            "retries": self.retries,
            "success": self.success,
            "error": self.error,
        }


def sign_payload(payload: Dict[str, Any], secret: str) -> str:
    """HMAC-SHA256 签名（排除 signature 字段本身）"""
    data = {k: v for k, v in payload.items() if k != "signature"}
    message = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    signature = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return f"sha256={signature}"


class WebhookClient:
    """
    Webhook 回调客户端

    功能:
    - 发送 HTTP POST 回调
    - 失败自动重试（指数退避）
    - 签名验证支持
    - 回调记录追踪
    """

    def __init__(self, max_records: int = 1000, transport: Optional[httpx.AsyncBaseTransport] = None):
        # 回调记录（内存缓存）
        self._records: List[CallbackRecord] = []
        self._max_records = max_records
        self._lock = Lock()
        self._transport = transport

    async def send(
        self,
        config: WebhookConfig,
        event: CallbackEvent,
        task_id: str,
        payload: Dict[str, Any],
    ) -> Optional[CallbackRecord]:
        """
        发送 Webhook 回调

        Args:
            config: Webhook 配置
            event: 事件类型
            task_id: 任务 ID
            payload: 回调数据

        Returns:
            回调记录，事件未订阅时返回 None
        """
        if event not in config.events:
            logger.debug("callback_event_skipped", callback_event=event.value, task_id=task_id)
            return None

        callback_payload = {
            "event": event.value,
            "task_id": task_id,
            "timestamp": _isoformat(_utcnow()),
            "data": payload,
        }

        if config.secret:
            callback_payload["signature"] = sign_payload(callback_payload, config.secret)

        record = CallbackRecord(
            id=f"cb_{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            event=event,
            url=config.url,
            payload=callback_payload,
            created_at=_utcnow(),
        )

        await self._send_with_retry(config, record)
        self._save_record(record)

        return record

    async def _send_with_retry(self, config: WebhookConfig, record: CallbackRecord) -> None:
        """带重试的发送"""
        retry_delay = config.retry_delay
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "DediGPU-Webhook/1.0",
            "X-Webhook-Event": record.event.value,
            "X-Webhook-ID": record.id,
            **config.headers,
        }

        for attempt in range(config.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=config.timeout, transport=self._transport) as client:
                    response = await client.post(config.url, json=record.payload, headers=headers)

                record.sent_at = _utcnow()
                record.response_status = response.status_code
                record.response_body = response.text[:1000] if response.text else None
                record.retries = attempt

                if response.is_success:
                    record.success = True
                    record.error = None
                    logger.info(
                        "webhook_sent",
                        record_id=record.id,
                        task_id=record.task_id,
                        callback_event=record.event.value,
                        status=response.status_code,
                        retries=attempt,
                    )
                    return

                record.error = f"HTTP {response.status_code}"
                logger.warning(
                    "webhook_failed",
                    record_id=record.id,
                    task_id=record.task_id,
                    status=response.status_code,
                    attempt=attempt + 1,
                )

            except httpx.TimeoutException as e:
                record.error = f"Timeout: {e}"
                logger.warning(
                    "webhook_timeout",
                    record_id=record.id,
                    task_id=record.task_id,
                    attempt=attempt + 1,
                )
            except httpx.RequestError as e:
                record.error = f"Request error: {e}"
                logger.warning(
                    "webhook_request_error",
                    record_id=record.id,
                    task_id=record.task_id,
                    error=str(e),
                    attempt=attempt + 1,
                )

            if attempt < config.max_retries:
                await asyncio.sleep(retry_delay)
                retry_delay *= config.retry_backoff

        record.retries = config.max_retries
        logger.error(
            "webhook_all_retries_failed",
            record_id=record.id,
            task_id=record.task_id,
            callback_event=record.event.value,
            url=config.url,
        )

    def _save_record(self, record: CallbackRecord) -> None:
        """保存回调记录"""
        with self._lock:
            self._records.append(record)
            if len(self._records) > self._max_records:
                self._records = self._records[-self._max_records:]

    def get_records(
        self,
        task_id: Optional[str] = None,
        event: Optional[CallbackEvent] = None,
        success: Optional[bool] = None,
        limit: int = 100,
    ) -> List[CallbackRecord]:
        """
        获取回调记录

        Args:
            task_id: 按任务 ID 过滤
            event: 按事件类型过滤
            success: 按成功状态过滤
            limit: 返回数量限制

        Returns:
            回调记录列表（按时间倒序）
        """
        with self._lock:
            records = self._records[:]

        if task_id:
            records = [r for r in records if r.task_id == task_id]
        if event:
            records = [r for r in records if r.event == event]
        if success is not None:
            records = [r for r in records if r.success == success]

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def get_stats(self) -> Dict[str, Any]:
        """获取回调统计"""
        with self._lock:
            records = self._records[:]

        total = len(records)
        success = sum(1 for r in records if r.success)

        by_event: Dict[str, Dict[str, int]] = {}
        for r in records:
            stats = by_event.setdefault(r.event.value, {"total": 0, "success": 0, "failed": 0})
            stats["total"] += 1
            stats["success" if r.success else "failed"] += 1

        return {
            "total": total,
            "success": success,
            "failed": total - success,
            "success_rate": round(success / total * 100, 2) if total > 0 else 0,
            "by_event": by_event,
        }


class TaskNotifier:
    """
    任务事件通知

    所有事件都会记录在内存中；任务声明了 callback_url（或配置了默认 URL）时，
    在当前事件循环中后台投递，不等待结果。
    """

    def __init__(
        self,
        client: Optional[WebhookClient] = None,
        default_url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        max_events: int = 1000,
    ):
        self.client = client or WebhookClient()
        self.default_url = default_url
        self.secret = secret
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._events: Deque[Tuple[str, CallbackEvent]] = deque(maxlen=max_events)
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "TaskNotifier":
        """从 WebhookSettings 构建"""
        return cls(
            default_url=settings.default_url,
            secret=settings.secret,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
        )

    def notify(self, task_id: str, event: CallbackEvent, payload: Dict[str, Any],
               callback_url: Optional[str] = None,
               callback_events: Optional[List[str]] = None) -> None:
        """发出任务事件"""
        self._events.append((task_id, event))
        logger.debug("task_event_emitted", task_id=task_id, callback_event=event.value)

        url = callback_url or self.default_url
        if not url:
            return

        # 全局默认 URL 订阅全部事件
        if callback_url:
            events = parse_events(callback_events)
        else:
            events = list(CallbackEvent)

        config = WebhookConfig(
            url=url,
            events=events,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            secret=self.secret,
        )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("webhook_no_event_loop", task_id=task_id, callback_event=event.value)
            return

        delivery = loop.create_task(self.client.send(config, event, task_id, payload))
        self._pending.add(delivery)
        delivery.add_done_callback(self._pending.discard)

    def emitted(self, task_id: Optional[str] = None) -> List[CallbackEvent]:
        """已发出的事件"""
        return [event for tid, event in self._events if task_id is None or tid == task_id]

    async def drain(self) -> None:
        """等待所有后台投递结束"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "emitted": len(self._events),
            "pending_deliveries": len(self._pending),
            "deliveries": self.client.get_stats(),
        }
