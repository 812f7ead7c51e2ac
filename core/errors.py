from typing import Any, Dict, Optional


class TelemetryError(Exception):
    """遥测管线异常基类。"""


class ValidationError(TelemetryError):
    """输入不合法，fields 给出字段级明细。"""

    def __init__(self, message: str, fields: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.fields = dict(fields or {})


class AuthorizationError(TelemetryError):
    pass


class TransientIngestionFailure(TelemetryError):
    """遥测写入失败（存储不可用），只在本地记录，不向业务响应传播。"""


class AggregationFailure(TelemetryError):
    """某个指标类型或某条保留策略执行失败，隔离在单个工作单元内。"""

    def __init__(self, unit: str, message: str, partial: Optional[Dict[str, Any]] = None):
        super().__init__(f"{unit}: {message}")
        self.unit = unit
        self.message = message
        # 失败前已经提交的部分结果
        self.partial = partial


class ArchiveError(TelemetryError):
    pass


class DestructiveOperationError(TelemetryError):
    """紧急清理被拒绝（确认口令错误或权限不足），不触碰任何数据。"""

    def __init__(self, message: str, reason: str = "confirm"):
        super().__init__(message)
        self.message = message
        self.reason = reason


def status_for_error(error: BaseException) -> int:
    """异常对应的 HTTP 状态码。"""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, DestructiveOperationError):
        return 403 if error.reason == "privilege" else 400
    if isinstance(error, TransientIngestionFailure):
        return 503
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return 500
