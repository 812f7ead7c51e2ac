"""
core/log.py — 统一日志

• 根日志器一次性配置，子模块通过 get_logger(__name__) 继承 handler
• 格式: 时间 [级别] [trace_id] 模块.函数:行号 - 消息
• trace_id 走 ContextVar：请求中间件按请求设置，后台 Job 用 trace_ctx()

    from core.log import get_logger, trace_ctx
    logger = get_logger(__name__)

    with trace_ctx("metrics-daily") as tid:
        logger.info("event=metrics.generate.start | period=day")
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional

import colorlog

from core.config import cfg

_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def set_trace_id(tid: Optional[str] = None) -> str:
    """设置当前上下文的 trace_id，返回实际值。"""
    tid = str(tid or "").strip()[:16] or _new_trace_id()
    _trace_id_var.set(tid)
    return tid


def get_trace_id() -> str:
    return _trace_id_var.get()


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    """后台 Job / 写入线程使用的 trace 上下文，退出时自动复位。"""
    token = _trace_id_var.set(str(trace_id or "").strip()[:16] or _new_trace_id())
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}
_APP_HANDLER_MARKER = "_is_app_log_handler"


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


_trace_filter = _TraceIdFilter()


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(str(name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """向根日志器注册 handler（幂等，uvicorn --reload 不会重复添加）。"""
    root = logging.getLogger()
    if any(getattr(h, _APP_HANDLER_MARKER, False) for h in root.handlers):
        return

    resolved = _resolve_level(level or cfg.get("log.level", "INFO"))
    root.setLevel(resolved)

    console = colorlog.StreamHandler(stream=sys.stdout)
    console.setFormatter(colorlog.ColoredFormatter("%(log_color)s" + _FMT, datefmt=_DATE_FMT, log_colors=_LOG_COLORS))
    console.setLevel(resolved)
    console.addFilter(_trace_filter)
    setattr(console, _APP_HANDLER_MARKER, True)
    root.addHandler(console)

    target = log_file if log_file is not None else cfg.get("log.file", "")
    if target:
        fh = logging.handlers.RotatingFileHandler(
            f"{target}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=7,
            encoding="utf-8",
        )
        fh.setLevel(resolved)
        fh.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
        fh.addFilter(_trace_filter)
        setattr(fh, _APP_HANDLER_MARKER, True)
        root.addHandler(fh)


setup_logging()

logger = logging.getLogger(__name__)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
