"""
数据保留与清理。

- RetentionPolicyStore：运行时策略注册表，显式传给 RetentionEngine
- RetentionEngine：统计、试运行、按策略归档 / 删除、紧急清理
- ArchiveSink：归档去向，默认写 JSON 文件

同一存储上的多条策略按“越具体越优先”排序，每条记录只归属第一条命中条件的策略，
所以试运行的计数和随后正式清理的删除数一致。
"""
import json
import os
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, func, not_, or_, true

from core.auth import is_super_admin
from core.config import cfg
from core.db import DB
from core.errors import AggregationFailure, ArchiveError, DestructiveOperationError, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.activity_record import ActivityRecord
from core.models.enums import EventCategory, EventStatus, RetentionScope, Severity
from core.models.metric_row import MetricRow
from core.models.system_event import SystemEvent
from core.telemetry_store import (
    append_system_event,
    serialize_activity,
    serialize_metric,
    serialize_system_event,
)

logger = get_logger(__name__)

DEFAULT_CONFIRM_TOKEN = "DELETE_ALL_DATA"
DEFAULT_BATCH_SIZE = 500
BYTES_PER_RECORD = 2048

_SCOPE_MODELS = {
    RetentionScope.ACTIVITY: (ActivityRecord, ActivityRecord.timestamp, serialize_activity),
    RetentionScope.SYSTEM_EVENT: (SystemEvent, SystemEvent.timestamp, serialize_system_event),
    RetentionScope.METRIC: (MetricRow, MetricRow.period_end, serialize_metric),
}


def estimate_size_mb(records: int) -> float:
    return round(records * BYTES_PER_RECORD / (1024 * 1024), 4)


def _str_list(value: Any, field_name: str, upper: bool = False) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        items = [x.strip() for x in value.split(",")]
    elif isinstance(value, (list, tuple, set)):
        items = [str(x).strip() for x in value]
    else:
        raise ValidationError(f"{field_name} 必须是字符串数组", fields={field_name: "must be a list of strings"})
    result = []
    for item in items:
        if not item:
            continue
        result.append(item.upper() if upper else item)
    return result


@dataclass
class RetentionPolicy:
    name: str
    max_age_days: int
    scope: RetentionScope = RetentionScope.ACTIVITY
    description: str = ""
    severities: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    exclude_users: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)
    archive_before_delete: bool = False
    enabled: bool = True

    @property
    def specificity(self) -> int:
        score = 0
        for conditions in (self.severities, self.actions, self.resources, self.categories, self.statuses):
            if conditions:
                score += 10
        if self.exclude_users:
            score += 5
        return score

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetentionPolicy":
        if not isinstance(data, dict):
            raise ValidationError("策略必须是对象", fields={"policy": "must be an object"})
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("策略缺少 name", fields={"name": "required"})

        raw_days = data.get("maxAgeDays", data.get("max_age_days", data.get("retentionDays")))
        try:
            days = int(raw_days)
        except (TypeError, ValueError):
            raise ValidationError("maxAgeDays 必须是整数", fields={"maxAgeDays": "must be an integer >= 1"})
        if days < 1:
            raise ValidationError("maxAgeDays 至少为 1", fields={"maxAgeDays": "must be an integer >= 1"})

        raw_scope = str(data.get("appliesTo", data.get("scope")) or RetentionScope.ACTIVITY.value).strip().lower()
        try:
            scope = RetentionScope(raw_scope)
        except ValueError:
            raise ValidationError(
                f"未知的 appliesTo: {raw_scope}",
                fields={"appliesTo": "must be one of activity, system_event, metric"},
            )

        conditions = data.get("conditions") if isinstance(data.get("conditions"), dict) else data
        severities = _str_list(conditions.get("severity", conditions.get("severities")), "severity", upper=True)
        for value in severities:
            if value not in Severity.__members__:
                raise ValidationError(f"未知的 severity: {value}", fields={"severity": "unknown severity"})
        categories = _str_list(conditions.get("categories"), "categories", upper=True)
        for value in categories:
            if value not in EventCategory.__members__:
                raise ValidationError(f"未知的 category: {value}", fields={"categories": "unknown category"})
        statuses = _str_list(conditions.get("statuses"), "statuses", upper=True)
        for value in statuses:
            if value not in EventStatus.__members__:
                raise ValidationError(f"未知的 status: {value}", fields={"statuses": "unknown status"})

        policy = cls(
            name=name[:120],
            max_age_days=days,
            scope=scope,
            description=str(data.get("description") or "")[:500],
            severities=severities,
            actions=_str_list(conditions.get("actions"), "actions", upper=True),
            resources=_str_list(conditions.get("resources"), "resources"),
            exclude_users=_str_list(conditions.get("excludeUsers", conditions.get("exclude_users")), "excludeUsers"),
            categories=categories,
            statuses=statuses,
            archive_before_delete=bool(data.get("archiveBeforeDelete", data.get("archive_before_delete", False))),
            enabled=bool(data.get("enabled", True)),
        )
        activity_only = policy.severities or policy.actions or policy.resources or policy.exclude_users
        if activity_only and scope != RetentionScope.ACTIVITY:
            raise ValidationError("severity/actions/resources/excludeUsers 只适用于 activity", fields={"conditions": "activity only"})
        if (policy.categories or policy.statuses) and scope != RetentionScope.SYSTEM_EVENT:
            raise ValidationError("categories/statuses 只适用于 system_event", fields={"conditions": "system_event only"})
        return policy

    def to_dict(self) -> Dict[str, Any]:
        conditions = {}
        for key, value in (
            ("severity", self.severities),
            ("actions", self.actions),
            ("resources", self.resources),
            ("excludeUsers", self.exclude_users),
            ("categories", self.categories),
            ("statuses", self.statuses),
        ):
            if value:
                conditions[key] = list(value)
        return {
            "name": self.name,
            "description": self.description,
            "appliesTo": self.scope.value,
            "maxAgeDays": self.max_age_days,
            "conditions": conditions,
            "archiveBeforeDelete": self.archive_before_delete,
            "enabled": self.enabled,
            "specificity": self.specificity,
        }


DEFAULT_POLICIES = (
    {"name": "debug_logs_cleanup", "description": "DEBUG 日志保留 7 天", "maxAgeDays": 7, "severity": ["DEBUG"]},
    {"name": "info_logs_cleanup", "description": "INFO 日志保留 30 天", "maxAgeDays": 30, "severity": ["INFO"]},
    {"name": "warn_logs_retention", "description": "WARN 日志保留 90 天", "maxAgeDays": 90, "severity": ["WARN"]},
    {
        "name": "error_logs_retention",
        "description": "ERROR/CRITICAL 保留 365 天，删除前归档",
        "maxAgeDays": 365,
        "severity": ["ERROR", "CRITICAL"],
        "archiveBeforeDelete": True,
    },
    {
        "name": "security_events_retention",
        "description": "登录与权限变更保留 1 年",
        "maxAgeDays": 365,
        "actions": ["LOGIN", "LOGOUT", "ADMIN_LOGIN", "USER_PROMOTE", "USER_DEMOTE"],
    },
    {
        "name": "business_events_retention",
        "description": "预订相关保留 2 年",
        "maxAgeDays": 730,
        "actions": ["BOOK", "CANCEL_BOOKING", "CONFIRM_BOOKING", "COMPLETE_BOOKING"],
    },
    {"name": "general_cleanup", "description": "其余操作记录保留 90 天", "maxAgeDays": 90},
    {
        "name": "audit_events_retention",
        "description": "安全与管理审计事件保留 1 年",
        "appliesTo": "system_event",
        "maxAgeDays": 365,
        "categories": ["SECURITY_EVENT", "ADMIN_ACTION"],
    },
    {
        "name": "processed_system_events",
        "description": "已结束的系统事件保留 30 天",
        "appliesTo": "system_event",
        "maxAgeDays": 30,
        "statuses": ["COMPLETED", "FAILED", "DISCARDED"],
    },
    {"name": "metric_rows_retention", "description": "聚合指标保留 1 年", "appliesTo": "metric", "maxAgeDays": 365},
)


class RetentionPolicyStore:
    """进程内策略注册表，不落库；重启后回到初始化时的策略。"""

    def __init__(self, policies: Optional[Iterable[Union[RetentionPolicy, Dict[str, Any]]]] = None):
        self._lock = threading.Lock()
        self._policies: "OrderedDict[str, RetentionPolicy]" = OrderedDict()
        for policy in policies or []:
            self.add(policy)

    @classmethod
    def with_defaults(cls) -> "RetentionPolicyStore":
        return cls(DEFAULT_POLICIES)

    def add(self, policy: Union[RetentionPolicy, Dict[str, Any]]) -> RetentionPolicy:
        item = policy if isinstance(policy, RetentionPolicy) else RetentionPolicy.from_dict(policy)
        with self._lock:
            if item.name in self._policies:
                raise ValidationError(f"策略 {item.name} 已存在", fields={"name": "already exists"})
            self._policies[item.name] = item
        return item

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._policies.pop(str(name or ""), None) is not None

    def get(self, name: str) -> Optional[RetentionPolicy]:
        with self._lock:
            return self._policies.get(name)

    def list(self) -> List[RetentionPolicy]:
        with self._lock:
            return list(self._policies.values())

    def ordered(self, scope: Optional[RetentionScope] = None, enabled_only: bool = True) -> List[RetentionPolicy]:
        """越具体越靠前；同分按注册顺序。"""
        items = [
            p for p in self.list()
            if (scope is None or p.scope == scope) and (p.enabled or not enabled_only)
        ]
        return sorted(items, key=lambda p: -p.specificity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)


class ArchiveSink:
    """归档去向。write 成功返回位置描述，失败抛 ArchiveError。"""

    def write(self, policy: RetentionPolicy, records: List[Dict[str, Any]]) -> str:
        raise NotImplementedError


class JsonFileArchiveSink(ArchiveSink):
    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or str(cfg.get("retention.archive_dir", "./data/archives") or "./data/archives")

    def write(self, policy: RetentionPolicy, records: List[Dict[str, Any]]) -> str:
        now = datetime.now()
        filename = f"{policy.scope.value}_{policy.name}_{now.strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}.json"
        path = os.path.join(self.directory, filename)
        data = {
            "policy": policy.name,
            "appliesTo": policy.scope.value,
            "archivedAt": now.isoformat(),
            "recordCount": len(records),
            "records": records,
        }
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except (OSError, TypeError, ValueError) as e:
            raise ArchiveError(f"写归档文件失败 {path}: {e}") from e
        return path


def _policy_condition(policy: RetentionPolicy):
    if policy.scope == RetentionScope.ACTIVITY:
        clauses = []
        if policy.severities:
            clauses.append(ActivityRecord.severity.in_(policy.severities))
        if policy.actions:
            clauses.append(ActivityRecord.action.in_(policy.actions))
        if policy.resources:
            clauses.append(ActivityRecord.resource.in_(policy.resources))
        if policy.exclude_users:
            clauses.append(or_(ActivityRecord.user_id.is_(None), ~ActivityRecord.user_id.in_(policy.exclude_users)))
        return and_(*clauses) if clauses else true()
    if policy.scope == RetentionScope.SYSTEM_EVENT:
        clauses = []
        if policy.categories:
            clauses.append(SystemEvent.event_category.in_(policy.categories))
        if policy.statuses:
            clauses.append(SystemEvent.status.in_(policy.statuses))
        return and_(*clauses) if clauses else true()
    return true()


class RetentionEngine:
    def __init__(
        self,
        policy_store: RetentionPolicyStore,
        session_factory: Optional[Callable[[], Any]] = None,
        archive_sink: Optional[ArchiveSink] = None,
        batch_size: Optional[int] = None,
        confirm_token: Optional[str] = None,
    ):
        self.policies = policy_store
        self._session_factory = session_factory or DB.get_session
        self.archive_sink = archive_sink or JsonFileArchiveSink()
        self.batch_size = max(1, int(batch_size or cfg.get("retention.batch_size", DEFAULT_BATCH_SIZE) or DEFAULT_BATCH_SIZE))
        self.confirm_token = str(confirm_token or cfg.get("retention.confirm_token", DEFAULT_CONFIRM_TOKEN) or DEFAULT_CONFIRM_TOKEN)

    # ── 策略管理 ──────────────────────────────────────────────────────────────

    def list_policies(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.policies.list()]

    def add_policy(self, policy: Union[RetentionPolicy, Dict[str, Any]]) -> RetentionPolicy:
        item = self.policies.add(policy)
        log_event(logger, E.RETENTION_POLICY_ADD, policy=item.name, scope=item.scope.value, max_age_days=item.max_age_days)
        return item

    def remove_policy(self, name: str) -> bool:
        removed = self.policies.remove(name)
        log_event(
            logger,
            E.RETENTION_POLICY_REMOVE,
            level="info" if removed else "warning",
            policy=name,
            removed=removed,
        )
        return removed

    # ── 查询条件 ──────────────────────────────────────────────────────────────

    def _owned_condition(self, policy: RetentionPolicy):
        """policy 命中且没有被更具体的策略先认领。"""
        ordered = self.policies.ordered(policy.scope)
        clauses = [_policy_condition(policy)]
        for other in ordered:
            if other.name == policy.name:
                break
            clauses.append(not_(_policy_condition(other)))
        return and_(*clauses)

    def _eligible_query(self, session, policy: RetentionPolicy, cutoff: datetime):
        model, age_column, _ = _SCOPE_MODELS[policy.scope]
        return session.query(model).filter(age_column < cutoff, self._owned_condition(policy))

    # ── 统计 ──────────────────────────────────────────────────────────────────

    def get_retention_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = now or datetime.now()
        session = self._session_factory()
        try:
            policies = []
            for policy in self.policies.ordered(enabled_only=False):
                cutoff = current - timedelta(days=policy.max_age_days)
                eligible = None
                if policy.enabled:
                    eligible = self._eligible_query(session, policy, cutoff).count()
                policies.append({**policy.to_dict(), "cutoff": cutoff.isoformat(), "eligible": eligible})

            ts = ActivityRecord.timestamp
            day = timedelta(days=1)
            ranges = (
                ("Last 24 hours", ts >= current - day),
                ("Last 7 days", and_(ts >= current - 7 * day, ts < current - day)),
                ("Last 30 days", and_(ts >= current - 30 * day, ts < current - 7 * day)),
                ("Last 90 days", and_(ts >= current - 90 * day, ts < current - 30 * day)),
                ("Older than 90 days", ts < current - 90 * day),
            )
            total = session.query(ActivityRecord).count()
            count = func.count(ActivityRecord.id)
            by_severity = session.query(ActivityRecord.severity, count).group_by(ActivityRecord.severity).all()
            by_action = (
                session.query(ActivityRecord.action, count)
                .group_by(ActivityRecord.action)
                .order_by(count.desc())
                .limit(10)
                .all()
            )
            return {
                "totalRecords": total,
                "systemEvents": session.query(SystemEvent).count(),
                "metricRows": session.query(MetricRow).count(),
                "recordsByAge": [
                    {"ageRange": label, "count": session.query(ActivityRecord).filter(cond).count()}
                    for label, cond in ranges
                ],
                "recordsBySeverity": [{"severity": s, "count": int(c)} for s, c in by_severity],
                "recordsByAction": [{"action": a, "count": int(c)} for a, c in by_action],
                "estimatedSizeMB": estimate_size_mb(total),
                "policies": policies,
                "generatedAt": current.isoformat(),
            }
        finally:
            session.close()

    # ── 清理 ──────────────────────────────────────────────────────────────────

    def _archive_batch(self, session, policy: RetentionPolicy, ids: List[str]) -> None:
        model, age_column, serializer = _SCOPE_MODELS[policy.scope]
        rows = session.query(model).filter(model.id.in_(ids)).order_by(age_column).all()
        records = [serializer(row) for row in rows]
        try:
            location = self.archive_sink.write(policy, records)
        except ArchiveError:
            raise
        except Exception as e:
            raise ArchiveError(f"归档失败: {e}") from e
        log_event(logger, E.RETENTION_ARCHIVE, policy=policy.name, records=len(records), location=location)

    def _run_policy(self, policy: RetentionPolicy, dry_run: bool, now: datetime) -> Dict[str, Any]:
        cutoff = now - timedelta(days=policy.max_age_days)
        result = {
            "name": policy.name,
            "appliesTo": policy.scope.value,
            "cutoff": cutoff.isoformat(),
            "matched": 0,
            "archived": 0,
            "deleted": 0,
            "status": "DRY_RUN" if dry_run else "COMPLETED",
            "error": None,
        }
        model, age_column, _ = _SCOPE_MODELS[policy.scope]
        session = self._session_factory()
        try:
            result["matched"] = self._eligible_query(session, policy, cutoff).count()
            if dry_run or not result["matched"]:
                return result
            while True:
                ids = [
                    row[0] for row in
                    self._eligible_query(session, policy, cutoff)
                    .with_entities(model.id)
                    .order_by(age_column)
                    .limit(self.batch_size)
                    .all()
                ]
                if not ids:
                    break
                if policy.archive_before_delete:
                    # 归档失败时本批不删
                    self._archive_batch(session, policy, ids)
                    result["archived"] += len(ids)
                deleted = session.query(model).filter(model.id.in_(ids)).delete(synchronize_session=False)
                session.commit()
                result["deleted"] += int(deleted or 0)
                if not deleted:
                    break
            return result
        except Exception as e:
            session.rollback()
            result["status"] = "FAILED"
            result["error"] = str(e)
            raise AggregationFailure(policy.name, str(e), partial=result) from e
        finally:
            session.close()

    def execute_cleanup(self, dry_run: bool = False, requested_by: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        current = now or datetime.now()
        log_event(logger, E.RETENTION_CLEANUP_START, dry_run=dry_run, requested_by=requested_by or "system")

        policies: List[Dict[str, Any]] = []
        errors: List[str] = []
        for scope in RetentionScope:
            for policy in self.policies.ordered(scope):
                try:
                    item = self._run_policy(policy, dry_run, current)
                except AggregationFailure as e:
                    errors.append(f"Policy '{e.unit}' failed: {e.message}")
                    log_event(logger, E.RETENTION_POLICY_FAIL, level="error", policy=e.unit, error=e.message)
                    policies.append(e.partial or {
                        "name": policy.name,
                        "appliesTo": policy.scope.value,
                        "cutoff": (current - timedelta(days=policy.max_age_days)).isoformat(),
                        "matched": 0,
                        "archived": 0,
                        "deleted": 0,
                        "status": "FAILED",
                        "error": e.message,
                    })
                    continue
                policies.append(item)
                log_event(
                    logger,
                    E.RETENTION_POLICY_DONE,
                    policy=policy.name,
                    dry_run=dry_run,
                    matched=item["matched"],
                    archived=item["archived"],
                    deleted=item["deleted"],
                )

        deleted = sum(p["deleted"] for p in policies)
        if errors:
            state = "FAILED"
        else:
            state = "DRY_RUN" if dry_run else "COMPLETED"
        result = {
            "state": state,
            "dryRun": bool(dry_run),
            "policies": policies,
            "totalRecordsProcessed": sum(p["matched"] for p in policies),
            "recordsArchived": sum(p["archived"] for p in policies),
            "recordsDeleted": deleted,
            "spaceSavedMB": estimate_size_mb(deleted),
            "executionTimeMs": int((time.perf_counter() - started) * 1000),
            "errors": errors,
            "requestedBy": requested_by,
            "executedAt": current.isoformat(),
        }
        log_event(
            logger,
            E.RETENTION_CLEANUP_COMPLETE,
            state=state,
            dry_run=dry_run,
            processed=result["totalRecordsProcessed"],
            deleted=deleted,
            errors=len(errors),
        )
        if not dry_run:
            self._audit(
                "retention.cleanup",
                requested_by,
                {
                    "action": "data_cleanup",
                    "processed": result["totalRecordsProcessed"],
                    "archived": result["recordsArchived"],
                    "deleted": deleted,
                    "errors": errors,
                },
                failed=bool(errors),
            )
        return result

    def _audit(self, event_type: str, requested_by: Optional[str], payload: Dict[str, Any], failed: bool = False) -> Optional[str]:
        session = self._session_factory()
        try:
            row = append_system_event(
                session,
                event_type,
                category=EventCategory.ADMIN_ACTION,
                source="retention",
                source_id=requested_by,
                payload=payload,
                status=EventStatus.FAILED if failed else EventStatus.COMPLETED,
            )
            return row.id
        except Exception as e:
            log_event(logger, E.RETENTION_PURGE, level="error", stage="audit", event_type=event_type, error=e)
            return None
        finally:
            session.close()

    # ── 紧急清理 ──────────────────────────────────────────────────────────────

    def _delete_older(self, session, scope: RetentionScope, cutoff: datetime, counts: Dict[str, int], key: str) -> None:
        """按批删除，每批提交后立即累加到 counts，中途失败时已删除的数量不丢。"""
        model, age_column, _ = _SCOPE_MODELS[scope]
        while True:
            ids = [row[0] for row in session.query(model.id).filter(age_column < cutoff).limit(self.batch_size).all()]
            if not ids:
                return
            deleted = session.query(model).filter(model.id.in_(ids)).delete(synchronize_session=False)
            session.commit()
            counts[key] += int(deleted or 0)
            if not deleted:
                return

    def emergency_purge(
        self,
        caller: Optional[Dict[str, Any]],
        older_than_days: Any,
        confirm: Any,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        不看策略、不归档，直接删除三类存储里早于截止时间的全部数据。
        权限或确认口令不符时直接拒绝，一条数据都不动。
        """
        requester = (caller or {}).get("user_id")
        if not is_super_admin(caller):
            log_event(logger, E.RETENTION_PURGE_REFUSED, level="warning", requester=requester, reason="privilege")
            raise DestructiveOperationError("紧急清理需要超级管理员权限", reason="privilege")
        if not isinstance(confirm, str) or confirm != self.confirm_token:
            log_event(logger, E.RETENTION_PURGE_REFUSED, level="warning", requester=requester, reason="confirm")
            raise DestructiveOperationError(f'确认口令错误，confirm 必须为 "{self.confirm_token}"', reason="confirm")
        try:
            days = int(older_than_days)
        except (TypeError, ValueError):
            days = 0
        if days < 1:
            raise ValidationError("olderThanDays 必须是 >= 1 的整数", fields={"olderThanDays": "must be an integer >= 1"})

        cutoff = (now or datetime.now()) - timedelta(days=days)
        counts = {"activitiesDeleted": 0, "eventsDeleted": 0, "metricsDeleted": 0}
        keys = (
            (RetentionScope.ACTIVITY, "activitiesDeleted"),
            (RetentionScope.SYSTEM_EVENT, "eventsDeleted"),
            (RetentionScope.METRIC, "metricsDeleted"),
        )
        session = self._session_factory()
        error: Optional[Exception] = None
        try:
            for scope, key in keys:
                self._delete_older(session, scope, cutoff, counts, key)
        except Exception as e:
            session.rollback()
            error = e
        finally:
            session.close()

        total = sum(counts.values())
        payload = {
            "action": "emergency_cleanup",
            "requestedBy": requester,
            "olderThanDays": days,
            "cutoffDate": cutoff.isoformat(),
            **counts,
            "totalDeleted": total,
        }
        if error is not None:
            payload["error"] = str(error)
        audit_id = self._audit("retention.emergency_purge", requester, payload, failed=error is not None)
        log_event(
            logger,
            E.RETENTION_PURGE,
            level="error" if error is not None else "warning",
            requester=requester,
            cutoff=cutoff.isoformat(),
            total=total,
            audit_id=audit_id,
        )
        if error is not None:
            raise error
        return {**counts, "totalDeleted": total, "cutoffDate": cutoff.isoformat(), "auditEventId": audit_id}
