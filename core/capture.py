"""
请求采集：把任意 handler 包装成“执行一次就写一条 ActivityRecord”的版本。

写库由 TelemetryWriter 后台线程完成，请求线程只负责入队；
队列有上限，满了丢最旧的一条并计数。
"""
import asyncio
import functools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from fastapi import Request

from core.auth import parse_bearer_user
from core.config import cfg, API_BASE
from core.db import DB
from core.errors import ValidationError, status_for_error
from core.events import log_event, E
from core.log import get_logger
from core.models.enums import ActivityAction, Severity
from core.live_feed import KIND_ACTIVITY, KIND_SYSTEM
from core.telemetry_store import (
    action_from_method,
    append_activity,
    append_system_event,
    build_security_event,
    build_system_event,
    commit_writes,
    live_system_event,
    publish_live,
    resource_from_path,
    serialize_activity,
    severity_for_status,
)

logger = get_logger(__name__)

DEFAULT_EXCLUDE_PATHS = (
    "/favicon.ico",
    f"{API_BASE}/health",
    f"{API_BASE}/docs",
    f"{API_BASE}/redoc",
    f"{API_BASE}/openapi.json",
    f"{API_BASE}/activity/track",
    # 轮询本身不记录，否则每次轮询都会给自己产生新事件
    f"{API_BASE}/activity/live",
)


def telemetry_enabled() -> bool:
    return bool(cfg.get("telemetry.enabled", True))


def _safe_int(value: Any, default: int, min_value: int = 1, max_value: int = 1000000) -> int:
    try:
        parsed = int(value)
    except Exception:
        parsed = default
    return max(min_value, min(max_value, parsed))


@dataclass
class TrackingConfig:
    """包装时声明的静态配置；action / resource 为空时按 HTTP 方法和路径推断。"""
    action: Optional[Union[ActivityAction, str]] = None
    resource: Optional[str] = None
    description: Optional[str] = None
    severity: Optional[Severity] = None
    tags: Sequence[str] = ()
    resource_id_param: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryWriter:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        max_queue: Optional[int] = None,
        batch_size: int = 100,
        idle_wait: float = 0.5,
    ):
        self._session_factory = session_factory or DB.get_session
        self.max_queue = _safe_int(
            max_queue if max_queue is not None else cfg.get("telemetry.queue_size", 10000),
            default=10000,
        )
        self.batch_size = max(1, int(batch_size))
        self.idle_wait = max(0.01, float(idle_wait))
        self._queue: deque = deque()
        self._cond = threading.Condition()
        self._inflight = 0
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self.submitted = 0
        self.written = 0
        self.dropped = 0
        self.failed = 0
        self.invalid = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> "TelemetryWriter":
        with self._cond:
            if self._running:
                return self
            self._running = True
            self._thread = threading.Thread(target=self._run, daemon=True, name="telemetry-writer")
            self._thread.start()
        log_event(logger, E.CAPTURE_WRITER_START, max_queue=self.max_queue)
        return self

    def submit(self, payload: Dict[str, Any], fallback: Optional[Dict[str, Any]] = None) -> None:
        self._enqueue((KIND_ACTIVITY, payload, fallback or {}))

    def submit_system_event(self, event: Dict[str, Any]) -> None:
        """event 是 append_system_event 的参数（build_system_event / build_security_event 的结果）。"""
        self._enqueue((KIND_SYSTEM, event, None))

    def _enqueue(self, item: Tuple[str, Dict[str, Any], Optional[Dict[str, Any]]]) -> None:
        overflow = 0
        with self._cond:
            while len(self._queue) >= self.max_queue:
                self._queue.popleft()
                self.dropped += 1
                overflow += 1
            self._queue.append(item)
            self.submitted += 1
            self._cond.notify_all()
        if overflow:
            log_event(logger, E.CAPTURE_QUEUE_OVERFLOW, level="warning", dropped=self.dropped, max_queue=self.max_queue)
        if not self._running:
            self.start()

    def _take_batch(self) -> List[Tuple[str, Dict[str, Any], Optional[Dict[str, Any]]]]:
        with self._cond:
            while not self._queue and self._running:
                self._cond.wait(self.idle_wait)
            batch = []
            while self._queue and len(batch) < self.batch_size:
                batch.append(self._queue.popleft())
            self._inflight = len(batch)
            return batch

    def _run(self) -> None:
        while True:
            batch = self._take_batch()
            if not batch:
                if not self._running:
                    break
                continue
            try:
                self._write(batch)
            finally:
                with self._cond:
                    self._inflight = 0
                    self._cond.notify_all()

    def _write(self, batch: List[Tuple[str, Dict[str, Any], Optional[Dict[str, Any]]]]) -> None:
        session = None
        try:
            session = self._session_factory()
            activities: List[Dict[str, Any]] = []
            events: List[Dict[str, Any]] = []
            for kind, payload, fallback in batch:
                try:
                    if kind == KIND_SYSTEM:
                        events.append(live_system_event(append_system_event(session, commit=False, **payload)))
                    else:
                        activities.append(serialize_activity(append_activity(session, payload, fallback=fallback, commit=False)))
                except ValidationError as e:
                    self.invalid += 1
                    log_event(logger, E.CAPTURE_SKIP, level="warning", reason=e.message, fields=e.fields)
            added = len(activities) + len(events)
            if added:
                commit_writes(session)
                publish_live(KIND_ACTIVITY, activities)
                publish_live(KIND_SYSTEM, events)
            self.written += added
        except Exception as e:
            self.failed += len(batch)
            log_event(logger, E.CAPTURE_WRITE_FAIL, level="error", size=len(batch), error=e)
        finally:
            if session is not None:
                session.close()

    def flush(self, timeout: float = 5.0) -> bool:
        """等待队列写空；超时返回 False。"""
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while self._running and (self._queue or self._inflight):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(min(remaining, 0.1))
            return not self._queue and not self._inflight

    def stop(self, timeout: float = 5.0) -> None:
        """停止后台线程，先尽量把队列写完。"""
        self.flush(timeout)
        with self._cond:
            self._running = False
            self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout)
        log_event(logger, E.CAPTURE_WRITER_STOP, **self.stats())

    def stats(self) -> Dict[str, int]:
        with self._cond:
            pending = len(self._queue)
        return {
            "pending": pending,
            "submitted": self.submitted,
            "written": self.written,
            "dropped": self.dropped,
            "failed": self.failed,
            "invalid": self.invalid,
        }


_WRITER_LOCK = threading.Lock()
_WRITER: Optional[TelemetryWriter] = None


def get_writer() -> TelemetryWriter:
    global _WRITER
    with _WRITER_LOCK:
        if _WRITER is None:
            _WRITER = TelemetryWriter()
        return _WRITER


def set_writer(writer: Optional[TelemetryWriter]) -> Optional[TelemetryWriter]:
    """替换进程级 writer（测试用），返回旧的。"""
    global _WRITER
    with _WRITER_LOCK:
        previous = _WRITER
        _WRITER = writer
        return previous


def client_ip(request: Any) -> str:
    headers = getattr(request, "headers", None) or {}
    forwarded = str(headers.get("X-Forwarded-For", "") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = str(headers.get("X-Real-IP", "") or "").strip()
    if real_ip:
        return real_ip
    client = getattr(request, "client", None)
    return str(getattr(client, "host", "") or "")


def _request_context(request: Any, current_user: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if request is None:
        return {"user_id": (current_user or {}).get("user_id")}
    headers = getattr(request, "headers", None) or {}
    user = current_user or parse_bearer_user(headers.get("Authorization", ""))
    return {
        "user_id": (user or {}).get("user_id"),
        "session_id": str(headers.get("X-Session-Id", "") or "") or None,
        "ip_address": client_ip(request) or None,
        "user_agent": str(headers.get("User-Agent", "") or "") or None,
        "referer": str(headers.get("Referer", "") or "") or None,
    }


def _request_method(request: Any) -> str:
    return str(getattr(request, "method", "") or "").upper()


def _request_path(request: Any) -> str:
    url = getattr(request, "url", None)
    return str(getattr(url, "path", "") or getattr(request, "path", "") or "")


def _find_request(args: Sequence[Any], kwargs: Dict[str, Any]) -> Any:
    for value in list(args) + list(kwargs.values()):
        if isinstance(value, Request):
            return value
    if "request" in kwargs:
        return kwargs["request"]
    if args and hasattr(args[0], "method"):
        return args[0]
    return None


def _mark_captured(request: Any) -> None:
    state = getattr(request, "state", None)
    if state is not None:
        try:
            state.activity_captured = True
        except AttributeError:
            pass


def _status_of(result: Any) -> int:
    code = getattr(result, "status_code", None)
    return int(code) if isinstance(code, int) else 200


def build_capture_payload(
    config: TrackingConfig,
    request: Any,
    status_code: int,
    duration_ms: int,
    error: Optional[BaseException] = None,
    resource_id: Optional[Any] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """时间戳取采集时刻，不等写线程落库时再补。"""
    method = _request_method(request)
    path = _request_path(request)
    action = config.action or (action_from_method(method) if method else ActivityAction.CUSTOM)
    action_value = action.value if isinstance(action, ActivityAction) else str(action).upper()

    derived = severity_for_status(status_code)
    severity = config.severity or derived
    if error is not None and derived > severity:
        severity = derived

    metadata = dict(config.metadata or {})
    if error is not None:
        metadata["error"] = type(error).__name__
        metadata["errorMessage"] = str(getattr(error, "detail", "") or error)[:500]

    payload = {
        "action": action_value,
        "resource": config.resource or resource_from_path(path),
        "resourceId": resource_id,
        "method": method or None,
        "endpoint": path or None,
        "statusCode": status_code,
        "duration": duration_ms,
        "severity": severity.value,
        "metadata": metadata,
        "tags": list(config.tags or ()),
        "timestamp": (timestamp or datetime.now()).isoformat(),
    }
    if config.description:
        payload["description"] = config.description
    return payload


def derived_system_event(
    status_code: int,
    payload: Dict[str, Any],
    context: Dict[str, Any],
    error: Optional[BaseException] = None,
    timestamp: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """401 / 403 记一条安全事件，未处理的 5xx 异常记一条 system.error。"""
    endpoint = payload.get("endpoint")
    if status_code in (401, 403):
        event = build_security_event(
            "security.unauthorized" if status_code == 401 else "security.forbidden",
            Severity.WARN,
            context=context,
            attempted_action=f"{payload.get('action')} {payload.get('resource')}",
            risk_score=50 if status_code == 401 else 75,
            details={"endpoint": endpoint, "method": payload.get("method"), "statusCode": status_code},
        )
    elif error is not None and status_code >= 500:
        event = build_system_event(
            "system.error",
            Severity.ERROR,
            component=payload.get("resource"),
            error={"type": type(error).__name__, "message": str(error)[:500]},
            metadata={"endpoint": endpoint, "method": payload.get("method")},
        )
        event["source_id"] = context.get("user_id")
    else:
        return None
    event["timestamp"] = timestamp
    return event


def _record(
    writer: Optional[TelemetryWriter],
    config: TrackingConfig,
    args: Sequence[Any],
    kwargs: Dict[str, Any],
    status_code: int,
    started: float,
    error: Optional[BaseException] = None,
) -> None:
    """入队一条记录；任何采集异常只记日志。"""
    try:
        if not telemetry_enabled():
            return
        request = _find_request(args, kwargs)
        current_user = kwargs.get("current_user") if isinstance(kwargs.get("current_user"), dict) else None
        resource_id = kwargs.get(config.resource_id_param) if config.resource_id_param else None
        duration_ms = int((time.perf_counter() - started) * 1000)
        captured_at = datetime.now()
        payload = build_capture_payload(
            config, request, status_code, duration_ms, error=error, resource_id=resource_id, timestamp=captured_at,
        )
        fallback = _request_context(request, current_user)
        payload["referer"] = fallback.pop("referer", None)
        target = writer or get_writer()
        target.submit(payload, fallback)
        _mark_captured(request)
        event = derived_system_event(status_code, payload, fallback, error=error, timestamp=captured_at)
        if event is not None:
            target.submit_system_event(event)
        log_event(logger, E.CAPTURE_RECORD, level="debug", action=payload["action"], resource=payload["resource"], status=status_code)
    except Exception as e:
        log_event(logger, E.CAPTURE_WRITE_FAIL, level="error", stage="enqueue", error=e)


def with_tracking(handler: Callable, config: Optional[TrackingConfig] = None, writer: Optional[TelemetryWriter] = None) -> Callable:
    """
    返回行为完全一致的 handler：返回值、异常原样透传，
    另外每次调用入队一条 ActivityRecord。同步、异步 handler 都支持。

        track_booking = with_tracking(create_booking, TrackingConfig(action=ActivityAction.BOOK, resource="booking"))
    """
    tracking = config or TrackingConfig()

    if asyncio.iscoroutinefunction(handler):
        @functools.wraps(handler)
        async def async_wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                result = await handler(*args, **kwargs)
            except Exception as e:
                _record(writer, tracking, args, kwargs, status_for_error(e), started, error=e)
                raise
            _record(writer, tracking, args, kwargs, _status_of(result), started)
            return result

        return async_wrapper

    @functools.wraps(handler)
    def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            result = handler(*args, **kwargs)
        except Exception as e:
            _record(writer, tracking, args, kwargs, status_for_error(e), started, error=e)
            raise
        _record(writer, tracking, args, kwargs, _status_of(result), started)
        return result

    return wrapper


def tracked(config: Optional[TrackingConfig] = None, writer: Optional[TelemetryWriter] = None):
    """装饰器写法：@tracked(TrackingConfig(...))"""
    def decorator(handler: Callable) -> Callable:
        return with_tracking(handler, config, writer=writer)

    return decorator


def excluded_paths() -> Tuple[str, ...]:
    extra = cfg.get("telemetry.exclude_paths", None) or []
    if isinstance(extra, str):
        extra = [x.strip() for x in extra.split(",") if x.strip()]
    return DEFAULT_EXCLUDE_PATHS + tuple(str(x) for x in extra)


def should_capture(path: str) -> bool:
    if not path.startswith(f"{API_BASE}/"):
        return False
    for prefix in excluded_paths():
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return False
    return True


async def capture_requests(request: Request, call_next):
    """全局 HTTP 中间件：已被 with_tracking 记录过的请求不再重复记录。"""
    started = time.perf_counter()
    path = str(request.url.path or "")
    try:
        response = await call_next(request)
    except Exception as e:
        if telemetry_enabled() and should_capture(path) and not getattr(request.state, "activity_captured", False):
            _record(None, TrackingConfig(), (request,), {}, 500, started, error=e)
        raise

    if not telemetry_enabled() or not should_capture(path):
        return response
    if getattr(request.state, "activity_captured", False):
        return response
    _record(None, TrackingConfig(), (request,), {}, int(response.status_code or 0), started)
    return response
