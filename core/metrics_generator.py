"""
按周期把原始 ActivityRecord 压缩成 MetricRow。

每组指标（登录、活动量、预订、车辆浏览、错误、响应时间）是一个独立单元：
单独计算、单独提交；某一组失败只记入结果，不影响其他组。
重复生成同一周期只会覆盖原行，内容不变时连 updated_at 也不动。
"""
import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.db import DB
from core.errors import AggregationFailure
from core.events import log_event, E
from core.log import get_logger
from core.models.activity_record import ActivityRecord
from core.models.enums import ActivityAction, MetricPeriod, Severity
from core.models.metric_row import MetricRow
from core.periods import normalize_period, period_bounds, previous_complete_day
from core.telemetry_store import serialize_metric

logger = get_logger(__name__)

_ID_NAMESPACE = uuid.UUID("6f1c2a4e-9d3b-4f57-a1e8-2c0b7d5e9a10")


def metric_id(metric_type: str, period: MetricPeriod, period_start: datetime) -> str:
    return uuid.uuid5(_ID_NAMESPACE, f"{metric_type}|{period.value}|{period_start.isoformat()}").hex


def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if not value:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


class MetricsGenerator:
    def __init__(self, session_factory: Optional[Callable[[], Any]] = None):
        self._session_factory = session_factory or DB.get_session
        self._computers = [
            ("logins", self._login_metrics),
            ("activities", self._activity_metrics),
            ("bookings", self._booking_metrics),
            ("resource_views", self._car_view_metrics),
            ("errors", self._error_metrics),
            ("performance", self._performance_metrics),
        ]

    # ── 各组指标 ──────────────────────────────────────────────────────────────

    @staticmethod
    def _window(session, start: datetime, end: datetime):
        return session.query(ActivityRecord).filter(
            ActivityRecord.timestamp >= start,
            ActivityRecord.timestamp < end,
        )

    def _login_metrics(self, session, start, end) -> List[Dict[str, Any]]:
        logins = self._window(session, start, end).filter(ActivityRecord.action == ActivityAction.LOGIN.value)
        login_count = logins.count()
        login_users = logins.filter(ActivityRecord.user_id.isnot(None)).with_entities(ActivityRecord.user_id).distinct().count()
        active_users = (
            self._window(session, start, end)
            .filter(ActivityRecord.user_id.isnot(None))
            .with_entities(ActivityRecord.user_id)
            .distinct()
            .count()
        )
        return [
            {"metric_type": "logins", "value": login_count, "unit": "count", "metadata": {"uniqueUsers": login_users}},
            {"metric_type": "active_users", "value": active_users, "unit": "count"},
        ]

    def _activity_metrics(self, session, start, end) -> List[Dict[str, Any]]:
        rows = (
            self._window(session, start, end)
            .with_entities(ActivityRecord.action, func.count(ActivityRecord.id))
            .group_by(ActivityRecord.action)
            .order_by(ActivityRecord.action)
            .all()
        )
        by_action = {action: int(count) for action, count in rows}
        result = [{
            "metric_type": "total_activities",
            "value": sum(by_action.values()),
            "unit": "count",
            "metadata": {"byAction": by_action},
        }]
        for action, count in by_action.items():
            result.append({
                "metric_type": f"activities_{action.lower()}",
                "value": count,
                "unit": "count",
                "dimensions": {"action": action},
            })
        return result

    def _booking_metrics(self, session, start, end) -> List[Dict[str, Any]]:
        booking = self._window(session, start, end).filter(ActivityRecord.resource == "booking")
        created = booking.filter(ActivityRecord.action.in_([ActivityAction.CREATE.value, ActivityAction.BOOK.value])).count()
        views = booking.filter(ActivityRecord.action == ActivityAction.READ.value).count()
        result = [{"metric_type": "bookings", "value": created, "unit": "count"}]
        if views > 0:
            result.append({
                "metric_type": "booking_conversion_rate",
                "value": round(created / views * 100, 4),
                "unit": "percentage",
                "metadata": {"bookings": created, "views": views},
            })
        return result

    def _car_view_metrics(self, session, start, end) -> List[Dict[str, Any]]:
        views = self._window(session, start, end).filter(
            ActivityRecord.resource == "car",
            ActivityRecord.action == ActivityAction.READ.value,
        )
        unique_cars = views.filter(ActivityRecord.resource_id.isnot(None)).with_entities(ActivityRecord.resource_id).distinct().count()
        return [{
            "metric_type": "resource_views",
            "value": views.count(),
            "unit": "count",
            "dimensions": {"resource": "car"},
            "metadata": {"uniqueResources": unique_cars},
        }]

    def _error_metrics(self, session, start, end) -> List[Dict[str, Any]]:
        window = self._window(session, start, end)
        total = window.count()
        errors = window.filter(ActivityRecord.severity.in_([Severity.ERROR.value, Severity.CRITICAL.value])).count()
        result = [{"metric_type": "errors", "value": errors, "unit": "count"}]
        if total > 0:
            result.append({
                "metric_type": "error_rate",
                "value": round(errors / total * 100, 4),
                "unit": "percentage",
                "metadata": {"errors": errors, "total": total},
            })
        return result

    def _performance_metrics(self, session, start, end) -> List[Dict[str, Any]]:
        avg_value, samples = (
            self._window(session, start, end)
            .filter(ActivityRecord.duration_ms.isnot(None))
            .with_entities(func.avg(ActivityRecord.duration_ms), func.count(ActivityRecord.duration_ms))
            .one()
        )
        if not samples:
            return []
        return [{
            "metric_type": "avg_response_time",
            "value": round(float(avg_value), 2),
            "unit": "ms",
            "metadata": {"samples": int(samples)},
        }]

    # ── 写入 ──────────────────────────────────────────────────────────────────

    def _upsert(self, session, item: Dict[str, Any], period: MetricPeriod, start: datetime, end: datetime) -> str:
        metric_type = item["metric_type"]
        value = float(item["value"])
        unit = item.get("unit")
        dimensions = _dump(item.get("dimensions"))
        metadata = _dump(item.get("metadata"))

        row = (
            session.query(MetricRow)
            .filter(
                MetricRow.metric_type == metric_type,
                MetricRow.period == period.value,
                MetricRow.period_start == start,
            )
            .first()
        )
        now = datetime.now()
        if row is None:
            session.add(MetricRow(
                id=metric_id(metric_type, period, start),
                metric_type=metric_type,
                metric_value=value,
                metric_unit=unit,
                dimensions_json=dimensions,
                metadata_json=metadata,
                period=period.value,
                period_start=start,
                period_end=end,
                created_at=now,
                updated_at=now,
            ))
            return "created"
        changed = (
            row.metric_value != value
            or row.metric_unit != unit
            or row.dimensions_json != dimensions
            or row.metadata_json != metadata
            or row.period_end != end
        )
        if not changed:
            return "unchanged"
        row.metric_value = value
        row.metric_unit = unit
        row.dimensions_json = dimensions
        row.metadata_json = metadata
        row.period_end = end
        row.updated_at = now
        return "updated"

    def _run_unit(self, compute, period: MetricPeriod, start: datetime, end: datetime) -> Dict[str, str]:
        # 并发生成撞上唯一约束时重来一次，第二次会走更新分支
        for attempt in range(2):
            session = self._session_factory()
            try:
                outcome = {}
                for item in compute(session, start, end):
                    outcome[item["metric_type"]] = self._upsert(session, item, period, start, end)
                session.commit()
                return outcome
            except IntegrityError:
                session.rollback()
                if attempt:
                    raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        return {}

    def generate_period_metrics(self, period: Union[str, MetricPeriod], period_start: datetime) -> Dict[str, Any]:
        p = normalize_period(period)
        start, end = period_bounds(p, period_start)
        log_event(logger, E.METRICS_GENERATE_START, period=p.value, start=start.isoformat())

        metrics: Dict[str, str] = {}
        failures: List[AggregationFailure] = []
        for name, compute in self._computers:
            try:
                outcome = self._run_unit(compute, p, start, end)
            except Exception as e:
                failure = AggregationFailure(name, str(e))
                failures.append(failure)
                log_event(logger, E.METRICS_TYPE_FAIL, level="error", unit=name, period=p.value, start=start.isoformat(), error=e)
                continue
            metrics.update(outcome)
            log_event(logger, E.METRICS_UPSERT, level="debug", unit=name, metrics=",".join(sorted(outcome)))

        status = "COMPLETED" if not failures else ("FAILED" if not metrics else "PARTIAL")
        log_event(
            logger,
            E.METRICS_GENERATE_COMPLETE,
            period=p.value,
            start=start.isoformat(),
            metrics=len(metrics),
            failed=len(failures),
            status=status,
        )
        return {
            "period": p.value,
            "periodStart": start.isoformat(),
            "periodEnd": end.isoformat(),
            "status": status,
            "metrics": metrics,
            "errors": [{"unit": f.unit, "error": f.message} for f in failures],
        }

    def generate_daily_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """生成上一个完整自然日的指标，供外部调度每天调用一次。"""
        start, _ = previous_complete_day(now or datetime.now())
        return self.generate_period_metrics(MetricPeriod.DAY, start)

    def get_metrics_summary(self) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            total = session.query(MetricRow).count()
            count = func.count(MetricRow.id)
            types = (
                session.query(MetricRow.metric_type, count)
                .group_by(MetricRow.metric_type)
                .order_by(count.desc(), MetricRow.metric_type)
                .all()
            )
            latest = session.query(func.max(MetricRow.period_end)).scalar()
            return {
                "totalMetrics": int(total),
                "metricTypes": [{"metricType": t, "count": int(c)} for t, c in types],
                "latestMetrics": latest.isoformat() if latest else None,
            }
        finally:
            session.close()

    def list_metrics(
        self,
        metric_type: Optional[str] = None,
        period: Optional[Union[str, MetricPeriod]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        session = self._session_factory()
        try:
            query = session.query(MetricRow)
            if metric_type:
                query = query.filter(MetricRow.metric_type == metric_type)
            if period:
                query = query.filter(MetricRow.period == normalize_period(period).value)
            if start:
                query = query.filter(MetricRow.period_start >= start)
            if end:
                query = query.filter(MetricRow.period_start <= end)
            rows = query.order_by(MetricRow.period_start, MetricRow.metric_type).limit(max(1, min(int(limit), 5000))).all()
            return [serialize_metric(row) for row in rows]
        finally:
            session.close()
