# 基础模型
from .base import Base
# 原始操作记录
from .activity_record import ActivityRecord
# 系统 / 安全 / 管理事件
from .system_event import SystemEvent
# 聚合指标
from .metric_row import MetricRow
from .enums import (
    ActivityAction,
    Severity,
    EventCategory,
    EventStatus,
    MetricPeriod,
    RetentionScope,
)
