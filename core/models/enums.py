"""遥测管线的枚举取值。"""
from enum import Enum


class ActivityAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFY = "EMAIL_VERIFY"
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BOOK = "BOOK"
    CANCEL_BOOKING = "CANCEL_BOOKING"
    CONFIRM_BOOKING = "CONFIRM_BOOKING"
    COMPLETE_BOOKING = "COMPLETE_BOOKING"
    ADMIN_LOGIN = "ADMIN_LOGIN"
    USER_PROMOTE = "USER_PROMOTE"
    USER_DEMOTE = "USER_DEMOTE"
    USER_ACTIVATE = "USER_ACTIVATE"
    USER_DEACTIVATE = "USER_DEACTIVATE"
    ROLE_ASSIGN = "ROLE_ASSIGN"
    ROLE_REMOVE = "ROLE_REMOVE"
    SEARCH = "SEARCH"
    FILTER = "FILTER"
    EXPORT = "EXPORT"
    IMPORT = "IMPORT"
    BACKUP = "BACKUP"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    CUSTOM = "CUSTOM"


class Severity(str, Enum):
    """有序：DEBUG < INFO < WARN < ERROR < CRITICAL"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER[self.value]

    def __ge__(self, other):
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented


SEVERITY_ORDER = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3, "CRITICAL": 4}


class EventCategory(str, Enum):
    USER_ACTION = "USER_ACTION"
    SYSTEM_EVENT = "SYSTEM_EVENT"
    SECURITY_EVENT = "SECURITY_EVENT"
    ADMIN_ACTION = "ADMIN_ACTION"


class EventStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DISCARDED = "DISCARDED"


class MetricPeriod(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RetentionScope(str, Enum):
    """保留策略作用的存储。"""
    ACTIVITY = "activity"
    SYSTEM_EVENT = "system_event"
    METRIC = "metric"
