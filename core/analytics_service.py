from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func

from core.auth import is_privileged
from core.errors import AuthorizationError, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.activity_record import ActivityRecord
from core.models.enums import ActivityAction, EventCategory, Severity
from core.models.system_event import SystemEvent
from core.periods import iter_periods, normalize_period
from core.telemetry_store import parse_timestamp, serialize_activity, serialize_system_event

logger = get_logger(__name__)

DEFAULT_WINDOW_DAYS = 30
MAX_BUCKETS = 2000
RECENT_LIMIT = 10
ERROR_SEVERITIES = (Severity.ERROR.value, Severity.CRITICAL.value)
ADMIN_ACTIONS = (
    ActivityAction.USER_PROMOTE.value,
    ActivityAction.USER_DEMOTE.value,
    ActivityAction.USER_ACTIVATE.value,
    ActivityAction.USER_DEACTIVATE.value,
    ActivityAction.ROLE_ASSIGN.value,
    ActivityAction.ROLE_REMOVE.value,
)


def _is_date_only(value: Any) -> bool:
    text = str(value or "").strip()
    return len(text) == 10 and text[4] == "-" and text[7] == "-"


def parse_range_bound(value: Any, field: str, end_of_day: bool = False) -> Optional[datetime]:
    """解析 startDate / endDate；只给日期的 endDate 视为当天最后一刻。"""
    if value is None or value == "":
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValidationError(f"{field} 不是合法的时间", fields={field: "invalid datetime"})
    if end_of_day and _is_date_only(value):
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


def resolve_date_range(
    start_date: Any = None,
    end_date: Any = None,
    default_days: int = DEFAULT_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    current = now or datetime.now()
    start = parse_range_bound(start_date, "startDate")
    end = parse_range_bound(end_date, "endDate", end_of_day=True) or current
    if start is None:
        start = end - timedelta(days=max(1, int(default_days)))
    if start > end:
        raise ValidationError("startDate 不能晚于 endDate", fields={"startDate": "must be <= endDate"})
    return start, end


def resolve_scope(caller: Optional[Dict[str, Any]], requested_user_id: Optional[str]) -> Tuple[Optional[str], bool]:
    """
    返回 (实际查询的 user_id, 是否全站视角)。
    非特权调用方无论请求哪个 userId，都只能看到自己的数据。
    """
    if not caller or not caller.get("user_id"):
        raise AuthorizationError("未登录，无法查询分析数据")
    if is_privileged(caller):
        target = str(requested_user_id or "").strip() or None
        return target, target is None
    return str(caller["user_id"]), False


def _ranked(rows) -> List[Dict[str, Any]]:
    return [{"key": key, "count": int(count or 0)} for key, count in rows]


def query_analytics(
    session,
    caller: Optional[Dict[str, Any]],
    start_date: Any = None,
    end_date: Any = None,
    group_by: str = "day",
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    target_user, system_wide = resolve_scope(caller, user_id)
    period = normalize_period(group_by or "day", field="groupBy")
    start, end = resolve_date_range(start_date, end_date, now=now)

    windows = []
    for lower, upper in iter_periods(start, end, period):
        windows.append((lower, upper))
        if len(windows) > MAX_BUCKETS:
            raise ValidationError("时间范围过大", fields={"groupBy": f"at most {MAX_BUCKETS} buckets"})

    base = session.query(ActivityRecord).filter(
        ActivityRecord.timestamp >= start,
        ActivityRecord.timestamp <= end,
    )
    if target_user:
        base = base.filter(ActivityRecord.user_id == target_user)

    bucket_map: Dict[datetime, Dict[str, Any]] = {
        lower: {"count": 0, "users": set(), "errors": 0} for lower, _ in windows
    }
    rows = base.with_entities(ActivityRecord.timestamp, ActivityRecord.user_id, ActivityRecord.severity).all()
    for ts, uid, severity in rows:
        slot = _bucket_for(windows, ts)
        if slot is None:
            continue
        info = bucket_map[slot]
        info["count"] += 1
        if uid:
            info["users"].add(uid)
        if severity in ERROR_SEVERITIES:
            info["errors"] += 1

    buckets = []
    for lower, upper in windows:
        info = bucket_map[lower]
        buckets.append({
            "periodStart": lower.isoformat(),
            "periodEnd": upper.isoformat(),
            "count": info["count"],
            "uniqueUsers": len(info["users"]),
            "errors": info["errors"],
        })

    def grouped(column):
        return _ranked(
            base.with_entities(column, func.count(ActivityRecord.id))
            .group_by(column)
            .order_by(func.count(ActivityRecord.id).desc())
            .all()
        )

    recent = base.order_by(ActivityRecord.timestamp.desc()).limit(RECENT_LIMIT).all()

    log_event(
        logger,
        E.ANALYTICS_QUERY,
        caller=caller.get("user_id"),
        scope="system" if system_wide else (target_user or ""),
        group_by=period.value,
        buckets=len(buckets),
        total=len(rows),
    )
    return {
        "startDate": start.isoformat(),
        "endDate": end.isoformat(),
        "groupBy": period.value,
        "totalActivities": len(rows),
        "buckets": buckets,
        "activitiesByAction": grouped(ActivityRecord.action),
        "activitiesByResource": grouped(ActivityRecord.resource),
        "activitiesBySeverity": grouped(ActivityRecord.severity),
        "recentActivities": [serialize_activity(row) for row in recent],
        "systemWide": system_wide,
        "userId": target_user,
        "requestedBy": caller.get("user_id"),
        "generatedAt": (now or datetime.now()).isoformat(),
    }


def _bucket_for(windows: List[Tuple[datetime, datetime]], ts: datetime) -> Optional[datetime]:
    # 窗口有序且不重叠，二分定位
    lo, hi = 0, len(windows) - 1
    while lo <= hi:
        mid = (lo + hi) // 2
        lower, upper = windows[mid]
        if ts < lower:
            hi = mid - 1
        elif ts >= upper:
            lo = mid + 1
        else:
            return lower
    return None


# ── 自定义查询 ─────────────────────────────────────────────────────────────────


def _limit(parameters: Dict[str, Any], default: int, maximum: int = 1000) -> int:
    value = parameters.get("limit", default)
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError("limit 必须是整数", fields={"limit": "must be an integer"})
    if parsed < 1:
        raise ValidationError("limit 必须大于 0", fields={"limit": "must be >= 1"})
    return min(parsed, maximum)


def _window(parameters: Dict[str, Any], default_days: int, now: Optional[datetime]) -> Tuple[datetime, datetime]:
    return resolve_date_range(
        parameters.get("startDate", parameters.get("start_date")),
        parameters.get("endDate", parameters.get("end_date")),
        default_days=default_days,
        now=now,
    )


def _user_activity_summary(session, parameters, now):
    start, end = _window(parameters, 30, now)
    count = func.count(ActivityRecord.id)
    rows = (
        session.query(ActivityRecord.user_id, count, func.avg(ActivityRecord.duration_ms))
        .filter(ActivityRecord.timestamp >= start, ActivityRecord.timestamp <= end)
        .group_by(ActivityRecord.user_id)
        .order_by(count.desc())
        .limit(_limit(parameters, 50))
        .all()
    )
    return [
        {
            "userId": uid,
            "count": int(total or 0),
            "avgDuration": round(float(avg), 2) if avg is not None else None,
        }
        for uid, total, avg in rows
    ]


def _resource_usage_stats(session, parameters, now):
    start, end = _window(parameters, 30, now)
    count = func.count(ActivityRecord.id)
    rows = (
        session.query(ActivityRecord.resource, ActivityRecord.action, count)
        .filter(ActivityRecord.timestamp >= start, ActivityRecord.timestamp <= end)
        .group_by(ActivityRecord.resource, ActivityRecord.action)
        .order_by(count.desc())
        .all()
    )
    return [{"resource": resource, "action": action, "count": int(total or 0)} for resource, action, total in rows]


def _error_analysis(session, parameters, now):
    start, end = _window(parameters, 7, now)
    rows = (
        session.query(ActivityRecord)
        .filter(
            ActivityRecord.severity.in_(ERROR_SEVERITIES),
            ActivityRecord.timestamp >= start,
            ActivityRecord.timestamp <= end,
        )
        .order_by(ActivityRecord.timestamp.desc())
        .limit(_limit(parameters, 100))
        .all()
    )
    return [serialize_activity(row) for row in rows]


def _performance_metrics(session, parameters, now):
    start, end = _window(parameters, 1, now)
    duration = ActivityRecord.duration_ms
    avg_value, min_value, max_value, total = (
        session.query(func.avg(duration), func.min(duration), func.max(duration), func.count(duration))
        .filter(duration.isnot(None), ActivityRecord.timestamp >= start, ActivityRecord.timestamp <= end)
        .one()
    )
    return {
        "avgDuration": round(float(avg_value), 2) if avg_value is not None else None,
        "minDuration": min_value,
        "maxDuration": max_value,
        "count": int(total or 0),
    }


def _security_events(session, parameters, now):
    start, end = _window(parameters, 7, now)
    rows = (
        session.query(SystemEvent)
        .filter(
            SystemEvent.event_category == EventCategory.SECURITY_EVENT.value,
            SystemEvent.timestamp >= start,
            SystemEvent.timestamp <= end,
        )
        .order_by(SystemEvent.timestamp.desc())
        .limit(_limit(parameters, 100))
        .all()
    )
    return [serialize_system_event(row) for row in rows]


def _admin_actions(session, parameters, now):
    start, end = _window(parameters, 30, now)
    rows = (
        session.query(ActivityRecord)
        .filter(
            ActivityRecord.action.in_(ADMIN_ACTIONS),
            ActivityRecord.timestamp >= start,
            ActivityRecord.timestamp <= end,
        )
        .order_by(ActivityRecord.timestamp.desc())
        .limit(_limit(parameters, 100))
        .all()
    )
    return [serialize_activity(row) for row in rows]


CUSTOM_QUERIES: Dict[str, Callable[..., Any]] = {
    "user_activity_summary": _user_activity_summary,
    "resource_usage_stats": _resource_usage_stats,
    "error_analysis": _error_analysis,
    "performance_metrics": _performance_metrics,
    "security_events": _security_events,
    "admin_actions": _admin_actions,
}


def execute_custom_query(
    session,
    caller: Optional[Dict[str, Any]],
    query: str,
    parameters: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """执行白名单内的只读查询；名字不在白名单时在访问存储之前拒绝。"""
    name = str(query or "").strip()
    handler = CUSTOM_QUERIES.get(name)
    if handler is None:
        log_event(logger, E.ANALYTICS_CUSTOM_REJECT, level="warning", query=name[:80], caller=(caller or {}).get("user_id"))
        raise ValidationError(
            "不支持的查询类型",
            fields={"query": f"must be one of {', '.join(sorted(CUSTOM_QUERIES))}"},
        )
    if not is_privileged(caller):
        raise AuthorizationError("自定义分析查询需要管理员权限")
    if parameters is not None and not isinstance(parameters, dict):
        raise ValidationError("parameters 必须是对象", fields={"parameters": "must be an object"})

    params = dict(parameters or {})
    try:
        result = handler(session, params, now)
    finally:
        # 只读：不论成败都不留下未提交的变更
        session.rollback()
    log_event(logger, E.ANALYTICS_CUSTOM_QUERY, query=name, caller=caller.get("user_id"))
    return {
        "query": name,
        "parameters": params,
        "result": result,
        "executedAt": (now or datetime.now()).isoformat(),
        "executedBy": caller.get("user_id"),
    }
