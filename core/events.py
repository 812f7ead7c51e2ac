"""
core/events.py — 结构化事件日志

遥测管线所有关键节点都通过 log_event() 输出，便于 grep / 统计。

格式：event=xxx | key=val | key=val

    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.RETENTION_POLICY_DONE, policy="info_logs_cleanup", deleted=42)
    # 输出：event=retention.policy.done | policy=info_logs_cleanup | deleted=42
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按管线组件分组。"""

    # ── 采集 Capture ───────────────────────────────────────────────────────────
    CAPTURE_RECORD = "capture.record"
    CAPTURE_SKIP = "capture.skip"
    CAPTURE_WRITE_FAIL = "capture.write.fail"
    CAPTURE_QUEUE_OVERFLOW = "capture.queue.overflow"
    CAPTURE_WRITER_START = "capture.writer.start"
    CAPTURE_WRITER_STOP = "capture.writer.stop"

    # ── 上报 Ingest ────────────────────────────────────────────────────────────
    INGEST_BATCH = "ingest.batch"
    INGEST_REJECT = "ingest.reject"

    # ── 客户端采集器 Collector ─────────────────────────────────────────────────
    COLLECTOR_FLUSH = "collector.flush"
    COLLECTOR_FLUSH_FAIL = "collector.flush.fail"
    COLLECTOR_IMMEDIATE = "collector.immediate"
    COLLECTOR_IMMEDIATE_FAIL = "collector.immediate.fail"
    COLLECTOR_DROP = "collector.drop"
    COLLECTOR_CLOSE = "collector.close"

    # ── 分析 Analytics ─────────────────────────────────────────────────────────
    ANALYTICS_QUERY = "analytics.query"
    ANALYTICS_CUSTOM_QUERY = "analytics.custom_query"
    ANALYTICS_CUSTOM_REJECT = "analytics.custom_query.reject"

    # ── 指标 Metrics ───────────────────────────────────────────────────────────
    METRICS_GENERATE_START = "metrics.generate.start"
    METRICS_GENERATE_COMPLETE = "metrics.generate.complete"
    METRICS_UPSERT = "metrics.upsert"
    METRICS_TYPE_FAIL = "metrics.type.fail"

    # ── 保留策略 Retention ─────────────────────────────────────────────────────
    RETENTION_CLEANUP_START = "retention.cleanup.start"
    RETENTION_CLEANUP_COMPLETE = "retention.cleanup.complete"
    RETENTION_POLICY_DONE = "retention.policy.done"
    RETENTION_POLICY_FAIL = "retention.policy.fail"
    RETENTION_ARCHIVE = "retention.archive"
    RETENTION_POLICY_ADD = "retention.policy.add"
    RETENTION_POLICY_REMOVE = "retention.policy.remove"
    RETENTION_PURGE = "retention.purge"
    RETENTION_PURGE_REFUSED = "retention.purge.refused"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_DB_INIT = "system.db_init"
    SYSTEM_JOB_START = "system.job.start"
    SYSTEM_JOB_FAIL = "system.job.fail"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志：

        log_event(logger, E.CAPTURE_QUEUE_OVERFLOW, level="warning", dropped=3)
        # → event=capture.queue.overflow | dropped=3
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = v if isinstance(v, str) else str(v)
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    getattr(logger, level)(" | ".join(parts), stacklevel=2)
