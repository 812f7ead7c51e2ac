"""
调用方侧的操作采集器。

低优先级事件先进内存缓冲，凑够 batch_size 或空闲 debounce_interval 秒后整批上报；
ERROR / CRITICAL 不进缓冲，立即单独发送一次。
每个实例有自己的缓冲，不在多个执行上下文之间共享。
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger
from core.models.enums import ActivityAction, Severity

logger = get_logger(__name__)

TRACKING_LEVELS = ("minimal", "standard", "detailed", "verbose")

Transport = Callable[[List[Dict[str, Any]]], Any]


@dataclass
class CollectorConfig:
    enabled: bool = True
    tracking_level: str = "standard"
    debounce_interval: float = 1.0
    batch_size: int = 10
    auto_flush: bool = True
    max_retries: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    endpoint: str = ""
    source: str = "client"

    @classmethod
    def from_config(cls, **overrides) -> "CollectorConfig":
        data = {
            "endpoint": str(cfg.get("collector.endpoint", "http://127.0.0.1:8001/api/activity/track") or ""),
            "batch_size": int(cfg.get("collector.batch_size", 10) or 10),
            "debounce_interval": float(cfg.get("collector.debounce_ms", 1000) or 1000) / 1000.0,
            "max_retries": int(cfg.get("collector.max_retries", 5) or 5),
            "tracking_level": str(cfg.get("collector.tracking_level", "standard") or "standard"),
        }
        data.update(overrides)
        return cls(**data)


class HttpTransport:
    """把一批事件 POST 到上报接口，非 2xx 抛 requests.HTTPError。"""

    def __init__(self, endpoint: str, token: str = "", timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self, batch: List[Dict[str, Any]]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = self.session.post(self.endpoint, json={"activities": batch}, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError:
            return {}


class ActivityCollector:
    def __init__(
        self,
        config: Optional[CollectorConfig] = None,
        transport: Optional[Transport] = None,
        context: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or CollectorConfig.from_config()
        if self.config.tracking_level not in TRACKING_LEVELS:
            self.config.tracking_level = "standard"
        self.transport = transport or HttpTransport(self.config.endpoint)
        self.context = dict(context or {})
        self._sleep = sleep
        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._retry: Optional[List[Dict[str, Any]]] = None
        self._failures = 0
        self._closed = False
        self.sent = 0
        self.dropped = 0
        self.immediate_failed = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer) + len(self._retry or [])

    def _context_metadata(self) -> Dict[str, Any]:
        level = self.config.tracking_level
        if level == "minimal":
            return {}
        meta: Dict[str, Any] = {"source": self.config.source}
        if level in ("detailed", "verbose"):
            for key in ("url", "referrer"):
                if self.context.get(key):
                    meta[key] = self.context[key]
        if level == "verbose":
            for key, value in self.context.items():
                meta.setdefault(key, value)
        return meta

    def _prepare(self, event: Dict[str, Any]) -> Dict[str, Any]:
        item = dict(event)
        action = item.get("action", ActivityAction.CUSTOM)
        item["action"] = action.value if isinstance(action, ActivityAction) else str(action)
        severity = item.get("severity", Severity.INFO)
        item["severity"] = severity.value if isinstance(severity, Severity) else str(severity).upper()
        metadata = dict(self._context_metadata())
        metadata.update(item.get("metadata") or {})
        item["metadata"] = metadata
        item.setdefault("timestamp", datetime.now().isoformat())
        if self.context.get("session_id") and not item.get("sessionId"):
            item["sessionId"] = self.context["session_id"]
        return item

    def track(self, event: Dict[str, Any]) -> None:
        if not self.config.enabled or self._closed:
            return
        item = self._prepare(event)
        if item["severity"] in (Severity.ERROR.value, Severity.CRITICAL.value):
            self._send_immediate(item)
            return
        with self._lock:
            self._buffer.append(item)
            full = len(self._buffer) >= max(1, int(self.config.batch_size))
            # 退避期间由重试计时器统一发送，新事件不重置计时
            backing_off = self._retry is not None
            if not full and not backing_off and self.config.auto_flush:
                self._schedule()
        if full and not backing_off and self.config.auto_flush:
            self._cancel_timer()
            self.flush()

    def track_event(
        self,
        event: str,
        category: str = "",
        label: str = "",
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        meta = dict(metadata or {})
        meta.update({"category": category, "label": label})
        if value is not None:
            meta["value"] = value
        self.track({"action": ActivityAction.CUSTOM, "resource": event, "metadata": meta})

    def track_page_view(self, path: str, title: str = "") -> None:
        if self.config.tracking_level == "minimal":
            return
        self.track({
            "action": ActivityAction.READ,
            "resource": "page",
            "resourceId": path,
            "description": f"Viewed page {title or path}",
            "metadata": {"path": path, "title": title},
        })

    def _schedule(self) -> None:
        # 每次入队都重置计时
        self._cancel_timer()
        timer = threading.Timer(max(0.0, float(self.config.debounce_interval)), self._on_debounce)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _on_debounce(self) -> None:
        with self._lock:
            self._timer = None
        self.flush()

    def _send_immediate(self, item: Dict[str, Any]) -> bool:
        try:
            self.transport([item])
        except Exception as e:
            self.immediate_failed += 1
            log_event(logger, E.COLLECTOR_IMMEDIATE_FAIL, level="error", action=item.get("action"), error=e)
            return False
        self.sent += 1
        log_event(logger, E.COLLECTOR_IMMEDIATE, action=item.get("action"), severity=item.get("severity"))
        return True

    def _backoff(self) -> float:
        delay = float(self.config.backoff_base) * (2 ** max(0, self._failures - 1))
        return min(delay, float(self.config.backoff_max))

    def flush(self, wait_backoff: bool = False) -> bool:
        """
        先重发上次失败的那一批，成功后再发缓冲里的新事件。
        失败的批次单独保存、单独计重试次数，超过 max_retries 次后只丢弃这一批。
        """
        with self._send_lock:
            while True:
                with self._lock:
                    if self._retry is not None:
                        batch = self._retry
                    elif self._buffer:
                        batch = self._buffer
                        self._buffer = []
                    else:
                        return True
                try:
                    self.transport(batch)
                except Exception as e:
                    return self._on_flush_failure(batch, e, wait_backoff)
                with self._lock:
                    self._retry = None
                    self._failures = 0
                self.sent += len(batch)
                log_event(logger, E.COLLECTOR_FLUSH, size=len(batch))

    def _on_flush_failure(self, batch: List[Dict[str, Any]], error: Exception, wait_backoff: bool) -> bool:
        with self._lock:
            self._failures += 1
            attempts = self._failures
            exhausted = attempts > max(0, int(self.config.max_retries))
            if exhausted:
                self._retry = None
                self._failures = 0
            else:
                self._retry = batch
            has_newer = bool(self._buffer)
        if exhausted:
            self.dropped += len(batch)
            log_event(logger, E.COLLECTOR_DROP, level="error", size=len(batch), attempts=attempts, error=error)
            if has_newer and self.config.auto_flush and not self._closed and not wait_backoff:
                with self._lock:
                    self._schedule()
            return False
        delay = self._backoff()
        log_event(logger, E.COLLECTOR_FLUSH_FAIL, level="warning", size=len(batch), attempt=attempts, retry_in=delay, error=error)
        if wait_backoff:
            self._sleep(delay)
        elif self.config.auto_flush and not self._closed:
            self._schedule_retry(delay)
        return False

    def _schedule_retry(self, delay: float) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(delay, self._on_debounce)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def close(self) -> None:
        """关闭前同步把缓冲发完（按重试上限），不静默丢弃。"""
        if self._closed:
            return
        self._closed = True
        self._cancel_timer()
        while self.pending:
            if self.flush(wait_backoff=True):
                break
        log_event(logger, E.COLLECTOR_CLOSE, sent=self.sent, dropped=self.dropped, pending=self.pending)

    def stats(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "sent": self.sent,
            "dropped": self.dropped,
            "immediate_failed": self.immediate_failed,
            "consecutive_failures": self._failures,
            "retrying": len(self._retry or []),
        }
