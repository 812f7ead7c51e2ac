"""
遥测事件存储：ActivityRecord / SystemEvent 的规范化、写入与读取。

写入只追加；删除与归档只由 core.retention_service 执行。
"""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.config import cfg
from core.errors import TransientIngestionFailure, ValidationError
from core.events import log_event, E
from core.live_feed import KIND_ACTIVITY, KIND_SYSTEM, get_live_feed
from core.log import get_logger
from core.models.activity_record import ActivityRecord
from core.models.enums import ActivityAction, EventCategory, EventStatus, Severity
from core.models.metric_row import MetricRow
from core.models.system_event import SystemEvent

logger = get_logger(__name__)

MAX_BATCH_SIZE = 200
MAX_HISTORY_LIMIT = 100
MASKED_VALUE = "***masked***"
DEFAULT_MASK_FIELDS = ("password", "token", "secret", "key")

_METHOD_ACTIONS = {
    "GET": ActivityAction.READ,
    "POST": ActivityAction.CREATE,
    "PUT": ActivityAction.UPDATE,
    "PATCH": ActivityAction.UPDATE,
    "DELETE": ActivityAction.DELETE,
}

_ACTION_SEVERITY = {
    ActivityAction.READ: Severity.DEBUG,
    ActivityAction.SEARCH: Severity.DEBUG,
    ActivityAction.FILTER: Severity.DEBUG,
    ActivityAction.PASSWORD_RESET: Severity.WARN,
    ActivityAction.DELETE: Severity.WARN,
    ActivityAction.USER_PROMOTE: Severity.WARN,
    ActivityAction.USER_DEMOTE: Severity.WARN,
    ActivityAction.USER_DEACTIVATE: Severity.WARN,
    ActivityAction.ROLE_ASSIGN: Severity.WARN,
    ActivityAction.ROLE_REMOVE: Severity.WARN,
    ActivityAction.IMPORT: Severity.WARN,
    ActivityAction.SYSTEM_ERROR: Severity.ERROR,
}

_ACTION_DESCRIPTIONS = {
    ActivityAction.LOGIN: "User logged in",
    ActivityAction.LOGOUT: "User logged out",
    ActivityAction.REGISTER: "User registered",
    ActivityAction.PASSWORD_RESET: "User reset password",
    ActivityAction.EMAIL_VERIFY: "User verified email",
    ActivityAction.CREATE: "Created {resource}",
    ActivityAction.READ: "Viewed {resource}",
    ActivityAction.UPDATE: "Updated {resource}",
    ActivityAction.DELETE: "Deleted {resource}",
    ActivityAction.BOOK: "Booked {resource}",
    ActivityAction.CANCEL_BOOKING: "Cancelled booking for {resource}",
    ActivityAction.CONFIRM_BOOKING: "Confirmed booking for {resource}",
    ActivityAction.COMPLETE_BOOKING: "Completed booking for {resource}",
    ActivityAction.ADMIN_LOGIN: "Admin logged in",
    ActivityAction.USER_PROMOTE: "Promoted user",
    ActivityAction.USER_DEMOTE: "Demoted user",
    ActivityAction.USER_ACTIVATE: "Activated user",
    ActivityAction.USER_DEACTIVATE: "Deactivated user",
    ActivityAction.ROLE_ASSIGN: "Assigned role",
    ActivityAction.ROLE_REMOVE: "Removed role",
    ActivityAction.SEARCH: "Searched {resource}",
    ActivityAction.FILTER: "Filtered {resource}",
    ActivityAction.EXPORT: "Exported {resource}",
    ActivityAction.IMPORT: "Imported {resource}",
    ActivityAction.BACKUP: "Backed up {resource}",
    ActivityAction.SYSTEM_ERROR: "System error occurred",
    ActivityAction.CUSTOM: "Custom action on {resource}",
}


def _safe_text(value: Any, limit: int = 255) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        return ""
    return text[:limit]


def _optional_text(value: Any, limit: int = 255) -> Optional[str]:
    return _safe_text(value, limit) or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _pick(source: Dict[str, Any], *keys: str) -> Any:
    """同时兼容 snake_case（服务端）和 camelCase（前端上报）的字段名。"""
    for key in keys:
        if key in source and source[key] is not None:
            return source[key]
    return None


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    text = _safe_text(value, 64)
    if not text:
        return default
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def mask_fields() -> Sequence[str]:
    configured = cfg.get("telemetry.mask_fields", None)
    if isinstance(configured, (list, tuple)) and configured:
        return tuple(str(x).lower() for x in configured)
    return DEFAULT_MASK_FIELDS


def normalize_metadata(value: Any, masked: Optional[Sequence[str]] = None, _depth: int = 0) -> Dict[str, Any]:
    """
    元数据只允许有限的值类型：str / int / float / bool / None / 嵌套 dict / 上述类型的 list。
    其他类型转成字符串；敏感字段（password、token ...）统一打码。
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("metadata 必须是对象", fields={"metadata": "must be an object"})
    fields = tuple(masked) if masked is not None else tuple(mask_fields())
    result: Dict[str, Any] = {}
    for raw_key, raw_value in value.items():
        key = str(raw_key)[:120]
        if any(f in key.lower() for f in fields):
            result[key] = MASKED_VALUE
            continue
        result[key] = _normalize_value(raw_value, fields, _depth + 1)
    return result


def _normalize_value(value: Any, masked: Sequence[str], depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value[:4000]
    if depth > 6:
        return _safe_text(value, 4000)
    if isinstance(value, dict):
        return normalize_metadata(value, masked, depth)
    if isinstance(value, (list, tuple, set)):
        return [_normalize_value(item, masked, depth + 1) for item in list(value)[:200]]
    if isinstance(value, datetime):
        return value.isoformat()
    return _safe_text(value, 4000)


def _normalize_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        raise ValidationError("tags 必须是字符串数组", fields={"tags": "must be a list of strings"})
    tags: List[str] = []
    for item in items:
        tag = _safe_text(item, 60).replace(",", " ")
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def action_from_method(method: str) -> ActivityAction:
    return _METHOD_ACTIONS.get(str(method or "").upper(), ActivityAction.CUSTOM)


def resource_from_path(path: str) -> str:
    """/api/cars/123 -> cars，无法识别时返回 api。"""
    segments = [x for x in str(path or "").split("/") if x]
    if len(segments) >= 2 and segments[0] == "api":
        # /api/v1/<resource>
        if len(segments) >= 3 and segments[1].startswith("v") and segments[1][1:].isdigit():
            return segments[2]
        return segments[1]
    return "api"


def severity_for_status(status_code: Optional[int], failed: bool = False) -> Severity:
    code = int(status_code or 0)
    if failed or code >= 500:
        return Severity.ERROR
    if code >= 400:
        return Severity.WARN
    return Severity.INFO


def default_severity(action: ActivityAction) -> Severity:
    return _ACTION_SEVERITY.get(action, Severity.INFO)


def default_description(action: ActivityAction, resource: str) -> str:
    template = _ACTION_DESCRIPTIONS.get(action, "Performed {action} on {resource}")
    return template.format(resource=resource, action=action.value)


def _parse_action(value: Any) -> ActivityAction:
    text = _safe_text(value, 32).upper()
    if not text:
        raise ValidationError("缺少 action", fields={"action": "required"})
    try:
        return ActivityAction(text)
    except ValueError:
        raise ValidationError(f"未知的 action: {text}", fields={"action": "unknown action"})


def _parse_severity(value: Any, default: Severity) -> Severity:
    if value is None or value == "":
        return default
    if isinstance(value, Severity):
        return value
    text = _safe_text(value, 16).upper()
    if text == "WARNING":
        text = "WARN"
    try:
        return Severity(text)
    except ValueError:
        raise ValidationError(f"未知的 severity: {text}", fields={"severity": "unknown severity"})


def build_activity(payload: Dict[str, Any], fallback: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    校验并规范化单条操作记录，返回可直接构造 ActivityRecord 的字段。
    id 一律由服务端生成，客户端上报的 id 忽略。
    """
    if not isinstance(payload, dict):
        raise ValidationError("事件必须是对象", fields={"event": "must be an object"})
    source = payload
    fallback_data = fallback if isinstance(fallback, dict) else {}

    action = _parse_action(_pick(source, "action"))
    resource = _safe_text(_pick(source, "resource"), 120)
    if not resource:
        raise ValidationError("缺少 resource", fields={"resource": "required"})

    status_code = _optional_int(_pick(source, "status_code", "statusCode"))
    duration = _optional_int(_pick(source, "duration_ms", "duration"))
    if duration is not None and duration < 0:
        raise ValidationError("duration 不能为负数", fields={"duration": "must be >= 0"})

    severity = _parse_severity(_pick(source, "severity"), default_severity(action))
    metadata = normalize_metadata(_pick(source, "metadata"))
    tags = _normalize_tags(_pick(source, "tags"))
    created = parse_timestamp(_pick(source, "timestamp", "created_at"), default=None) or now or datetime.now()

    user_id = _optional_text(fallback_data.get("user_id"), 255) or _optional_text(_pick(source, "user_id", "userId"), 255)
    session_id = _optional_text(_pick(source, "session_id", "sessionId"), 120) or _optional_text(fallback_data.get("session_id"), 120)

    return {
        "id": uuid.uuid4().hex,
        "user_id": user_id,
        "session_id": session_id,
        "action": action.value,
        "resource": resource,
        "resource_id": _optional_text(_pick(source, "resource_id", "resourceId"), 255),
        "description": _safe_text(_pick(source, "description"), 2000) or default_description(action, resource),
        "ip_address": _optional_text(_pick(source, "ip_address", "ipAddress") or fallback_data.get("ip_address"), 64),
        "user_agent": _optional_text(_pick(source, "user_agent", "userAgent") or fallback_data.get("user_agent"), 500),
        "referer": _optional_text(_pick(source, "referer", "referrer"), 500),
        "method": _optional_text(_pick(source, "method"), 16),
        "endpoint": _optional_text(_pick(source, "endpoint"), 500),
        "status_code": status_code,
        "duration_ms": duration,
        "severity": severity.value,
        "metadata_json": json.dumps(metadata, ensure_ascii=False) if metadata else None,
        "tags": ",".join(tags) if tags else None,
        "timestamp": created,
    }


def append_activity(session, payload: Dict[str, Any], fallback: Optional[Dict[str, Any]] = None, commit: bool = True) -> ActivityRecord:
    """commit=False 时由调用方提交，并自行调用 publish_live。"""
    record = ActivityRecord(**build_activity(payload, fallback=fallback))
    session.add(record)
    if commit:
        live = serialize_activity(record)
        commit_writes(session)
        publish_live(KIND_ACTIVITY, [live])
    return record


def publish_live(kind: str, items: List[Dict[str, Any]]) -> None:
    """只推已提交的记录。"""
    if items:
        get_live_feed().publish(kind, items)


def append_activities(session, payloads: Iterable[Any], fallback: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    批量写入：单条校验失败不影响整批，返回接受数与被拒明细。
    存储本身不可用时抛 TransientIngestionFailure。
    """
    items = list(payloads or [])
    if len(items) > MAX_BATCH_SIZE:
        raise ValidationError(
            f"单批最多 {MAX_BATCH_SIZE} 条",
            fields={"activities": f"at most {MAX_BATCH_SIZE} items"},
        )
    accepted: List[Dict[str, Any]] = []
    rejected: List[Dict[str, Any]] = []
    live: List[Dict[str, Any]] = []
    now = datetime.now()
    for index, payload in enumerate(items):
        try:
            data = build_activity(payload, fallback=fallback, now=now)
        except ValidationError as e:
            rejected.append({"index": index, "error": e.message, "fields": e.fields})
            continue
        record = ActivityRecord(**data)
        session.add(record)
        live.append(serialize_activity(record))
        accepted.append({"index": index, "id": data["id"], "action": data["action"], "resource": data["resource"]})
    if accepted:
        commit_writes(session)
        publish_live(KIND_ACTIVITY, live)
    if rejected:
        log_event(logger, E.INGEST_REJECT, level="warning", rejected=len(rejected), total=len(items))
    log_event(logger, E.INGEST_BATCH, accepted=len(accepted), rejected=len(rejected))
    return {
        "accepted": len(accepted),
        "rejected": rejected,
        "total": len(items),
        "activities": accepted,
    }


def append_system_event(
    session,
    event_type: str,
    category: EventCategory = EventCategory.SYSTEM_EVENT,
    source: str = "system",
    source_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    status: EventStatus = EventStatus.COMPLETED,
    commit: bool = True,
    timestamp: Optional[datetime] = None,
) -> SystemEvent:
    """commit=False 时由调用方提交，并自行调用 publish_live。"""
    now = datetime.now()
    row = SystemEvent(
        id=uuid.uuid4().hex,
        event_type=_safe_text(event_type, 120) or "system.event",
        event_category=EventCategory(category).value,
        source=_optional_text(source, 120),
        source_id=_optional_text(source_id, 255),
        payload_json=json.dumps(normalize_metadata(payload or {}), ensure_ascii=False),
        status=EventStatus(status).value,
        processed_at=now if EventStatus(status) == EventStatus.COMPLETED else None,
        timestamp=timestamp or now,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    if commit:
        live = live_system_event(row)
        commit_writes(session)
        publish_live(KIND_SYSTEM, [live])
    return row


def live_system_event(row: SystemEvent) -> Dict[str, Any]:
    data = serialize_system_event(row)
    data["userId"] = row.source_id
    return data


def _prefixed(event_type: Any, prefix: str) -> str:
    text = _safe_text(event_type, 120)
    if not text:
        raise ValidationError("缺少 eventType", fields={"eventType": "required"})
    if not text.startswith(f"{prefix}."):
        text = f"{prefix}.{text}"
    return text[:120]


def build_system_event(
    event_type: Any,
    severity: Any = Severity.INFO,
    component: Optional[str] = None,
    error: Optional[Dict[str, Any]] = None,
    performance: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """系统事件（system.error、system.startup ...），返回 append_system_event 的参数。"""
    payload: Dict[str, Any] = {"severity": _parse_severity(severity, Severity.INFO).value}
    if component:
        payload["component"] = _safe_text(component, 120)
    if error:
        payload["errorDetails"] = normalize_metadata(error)
    if performance:
        payload["performanceMetrics"] = normalize_metadata(performance)
    if metadata:
        payload["metadata"] = normalize_metadata(metadata)
    return {
        "event_type": _prefixed(event_type, "system"),
        "category": EventCategory.SYSTEM_EVENT,
        "source": _safe_text(component, 120) or "system",
        "payload": payload,
    }


def build_security_event(
    event_type: Any,
    severity: Any = Severity.WARN,
    context: Optional[Dict[str, Any]] = None,
    attempted_action: Optional[str] = None,
    risk_score: Any = None,
    details: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """安全事件（security.unauthorized、security.login_failed ...），context 里带 user_id / ip_address / user_agent。"""
    ctx = context if isinstance(context, dict) else {}
    score = _optional_int(risk_score)
    if score is not None and not 0 <= score <= 100:
        raise ValidationError("riskScore 取值 0-100", fields={"riskScore": "must be between 0 and 100"})
    security_context = {
        "ipAddress": _optional_text(ctx.get("ip_address"), 64),
        "userAgent": _optional_text(ctx.get("user_agent"), 500),
        "attemptedAction": _optional_text(attempted_action, 120),
        "riskScore": score,
    }
    payload: Dict[str, Any] = {
        "severity": _parse_severity(severity, Severity.WARN).value,
        "securityContext": {k: v for k, v in security_context.items() if v is not None},
    }
    if details:
        payload["details"] = normalize_metadata(details)
    if metadata:
        payload["metadata"] = normalize_metadata(metadata)
    return {
        "event_type": _prefixed(event_type, "security"),
        "category": EventCategory.SECURITY_EVENT,
        "source": "security",
        "source_id": _optional_text(ctx.get("user_id"), 255),
        "payload": payload,
    }


def track_system(session, event_type: str, severity: Any = Severity.INFO, **options) -> SystemEvent:
    return append_system_event(session, **build_system_event(event_type, severity, **options))


def track_security(session, event_type: str, severity: Any = Severity.WARN, **options) -> SystemEvent:
    return append_system_event(session, **build_security_event(event_type, severity, **options))


_INGEST_CATEGORIES = (EventCategory.SYSTEM_EVENT.value, EventCategory.SECURITY_EVENT.value)


def _build_ingested_event(item: Any, fallback: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(item, dict):
        raise ValidationError("事件必须是对象", fields={"event": "must be an object"})
    category = _safe_text(_pick(item, "category", "eventCategory"), 32).upper() or EventCategory.SYSTEM_EVENT.value
    if category not in _INGEST_CATEGORIES:
        # ADMIN_ACTION 只由服务端审计写入
        raise ValidationError(
            f"不支持的事件分类: {category}",
            fields={"category": f"must be one of {', '.join(_INGEST_CATEGORIES)}"},
        )
    event_type = _pick(item, "event_type", "eventType", "type")
    severity = _pick(item, "severity")
    metadata = _pick(item, "metadata")
    if category == EventCategory.SECURITY_EVENT.value:
        context = dict(fallback)
        context["user_id"] = _pick(item, "user_id", "userId") or fallback.get("user_id")
        return build_security_event(
            event_type,
            severity or Severity.WARN,
            context=context,
            attempted_action=_pick(item, "attempted_action", "attemptedAction"),
            risk_score=_pick(item, "risk_score", "riskScore"),
            details=_pick(item, "details"),
            metadata=metadata,
        )
    data = build_system_event(
        event_type,
        severity or Severity.INFO,
        component=_pick(item, "component", "source"),
        error=_pick(item, "error_details", "errorDetails"),
        performance=_pick(item, "performance_metrics", "performanceMetrics"),
        metadata=metadata,
    )
    data["source_id"] = _optional_text(fallback.get("user_id"), 255)
    return data


def append_system_events(session, items: Iterable[Any], fallback: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """批量写入系统 / 安全事件，规则与 append_activities 相同：逐条校验，部分接受。"""
    events = list(items or [])
    if len(events) > MAX_BATCH_SIZE:
        raise ValidationError(
            f"单批最多 {MAX_BATCH_SIZE} 条",
            fields={"events": f"at most {MAX_BATCH_SIZE} items"},
        )
    fallback_data = fallback if isinstance(fallback, dict) else {}
    accepted: List[Dict[str, Any]] = []
    rejected: List[Dict[str, Any]] = []
    live: List[Dict[str, Any]] = []
    for index, item in enumerate(events):
        try:
            data = _build_ingested_event(item, fallback_data)
        except ValidationError as e:
            rejected.append({"index": index, "error": e.message, "fields": e.fields})
            continue
        row = append_system_event(session, commit=False, **data)
        live.append(live_system_event(row))
        accepted.append({"index": index, "id": row.id, "eventType": row.event_type, "category": row.event_category})
    if accepted:
        commit_writes(session)
        publish_live(KIND_SYSTEM, live)
    if rejected:
        log_event(logger, E.INGEST_REJECT, level="warning", rejected=len(rejected), total=len(events), kind="system_event")
    log_event(logger, E.INGEST_BATCH, accepted=len(accepted), rejected=len(rejected), kind="system_event")
    return {
        "accepted": len(accepted),
        "rejected": rejected,
        "total": len(events),
        "events": accepted,
    }


def commit_writes(session) -> None:
    try:
        session.commit()
    except Exception as e:
        session.rollback()
        raise TransientIngestionFailure(f"遥测写入失败: {e}") from e


def _load_json(text: Any) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_activity(row: ActivityRecord) -> Dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "sessionId": row.session_id,
        "action": row.action,
        "resource": row.resource,
        "resourceId": row.resource_id,
        "description": row.description,
        "ipAddress": row.ip_address,
        "userAgent": row.user_agent,
        "referer": row.referer,
        "method": row.method,
        "endpoint": row.endpoint,
        "statusCode": row.status_code,
        "duration": row.duration_ms,
        "severity": row.severity,
        "metadata": _load_json(row.metadata_json),
        "tags": [x for x in (row.tags or "").split(",") if x],
        "timestamp": _iso(row.timestamp),
    }


def serialize_system_event(row: SystemEvent) -> Dict[str, Any]:
    return {
        "id": row.id,
        "eventType": row.event_type,
        "eventCategory": row.event_category,
        "source": row.source,
        "sourceId": row.source_id,
        "payload": _load_json(row.payload_json),
        "status": row.status,
        "timestamp": _iso(row.timestamp),
    }


def serialize_metric(row: MetricRow) -> Dict[str, Any]:
    return {
        "id": row.id,
        "metricType": row.metric_type,
        "metricValue": row.metric_value,
        "metricUnit": row.metric_unit,
        "dimensions": _load_json(row.dimensions_json),
        "metadata": _load_json(row.metadata_json),
        "period": row.period,
        "periodStart": _iso(row.period_start),
        "periodEnd": _iso(row.period_end),
    }


def get_user_activity_history(
    session,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    actions: Optional[Sequence[str]] = None,
    resources: Optional[Sequence[str]] = None,
    severities: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    size = max(1, min(int(limit or 50), MAX_HISTORY_LIMIT))
    skip = max(0, int(offset or 0))

    query = session.query(ActivityRecord).filter(ActivityRecord.user_id == str(user_id))
    if start_date:
        query = query.filter(ActivityRecord.timestamp >= start_date)
    if end_date:
        query = query.filter(ActivityRecord.timestamp <= end_date)
    if actions:
        query = query.filter(ActivityRecord.action.in_([str(x).upper() for x in actions]))
    if resources:
        query = query.filter(ActivityRecord.resource.in_(list(resources)))
    if severities:
        query = query.filter(ActivityRecord.severity.in_([str(x).upper() for x in severities]))

    total = int(query.count())
    rows = query.order_by(ActivityRecord.timestamp.desc()).offset(skip).limit(size).all()
    return {
        "activities": [serialize_activity(row) for row in rows],
        "total": total,
        "hasMore": skip + len(rows) < total,
    }
