"""时间窗口对齐：小时 / 天 / 周（周一起始）/ 月。"""
from datetime import datetime, timedelta
from typing import Iterator, Tuple, Union

from core.errors import ValidationError
from core.models.enums import MetricPeriod

_PERIOD_ALIASES = {
    "hour": MetricPeriod.HOUR,
    "hourly": MetricPeriod.HOUR,
    "day": MetricPeriod.DAY,
    "daily": MetricPeriod.DAY,
    "week": MetricPeriod.WEEK,
    "weekly": MetricPeriod.WEEK,
    "month": MetricPeriod.MONTH,
    "monthly": MetricPeriod.MONTH,
}


def normalize_period(value: Union[str, MetricPeriod], field: str = "period") -> MetricPeriod:
    if isinstance(value, MetricPeriod):
        return value
    key = str(value or "").strip().lower()
    if key not in _PERIOD_ALIASES:
        raise ValidationError(
            f"不支持的时间粒度: {value}",
            fields={field: "must be one of hour, day, week, month"},
        )
    return _PERIOD_ALIASES[key]


def floor_to_period(dt: datetime, period: Union[str, MetricPeriod]) -> datetime:
    p = normalize_period(period)
    base = dt.replace(minute=0, second=0, microsecond=0)
    if p == MetricPeriod.HOUR:
        return base
    base = base.replace(hour=0)
    if p == MetricPeriod.DAY:
        return base
    if p == MetricPeriod.WEEK:
        return base - timedelta(days=base.weekday())
    return base.replace(day=1)


def next_period_start(start: datetime, period: Union[str, MetricPeriod]) -> datetime:
    p = normalize_period(period)
    if p == MetricPeriod.HOUR:
        return start + timedelta(hours=1)
    if p == MetricPeriod.DAY:
        return start + timedelta(days=1)
    if p == MetricPeriod.WEEK:
        return start + timedelta(days=7)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def period_bounds(period: Union[str, MetricPeriod], anchor: datetime) -> Tuple[datetime, datetime]:
    """返回 anchor 所在窗口的 [start, end)。"""
    start = floor_to_period(anchor, period)
    return start, next_period_start(start, period)


def iter_periods(start: datetime, end: datetime, period: Union[str, MetricPeriod]) -> Iterator[Tuple[datetime, datetime]]:
    """依次给出覆盖闭区间 [start, end] 的全部对齐窗口。"""
    cursor = floor_to_period(start, period)
    while cursor <= end:
        upper = next_period_start(cursor, period)
        yield cursor, upper
        cursor = upper


def previous_complete_day(now: datetime) -> Tuple[datetime, datetime]:
    today = floor_to_period(now, MetricPeriod.DAY)
    return today - timedelta(days=1), today
