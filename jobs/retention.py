import time
from threading import Thread

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger, trace_ctx
from core.retention_service import RetentionEngine

logger = get_logger(__name__)


def _worker_loop(engine: RetentionEngine):
    interval = max(3600, int(float(cfg.get("retention.interval_hours", 24) or 24) * 3600))
    while True:
        time.sleep(interval)
        try:
            with trace_ctx():
                result = engine.execute_cleanup(dry_run=False, requested_by="scheduler")
            if result["errors"]:
                log_event(logger, E.SYSTEM_JOB_FAIL, level="warning", job="retention", errors=len(result["errors"]))
        except Exception:
            logger.exception("定时保留清理异常")


def start_retention_worker(engine: RetentionEngine):
    log_event(logger, E.SYSTEM_JOB_START, job="retention", interval_hours=cfg.get("retention.interval_hours", 24))
    t = Thread(target=_worker_loop, args=(engine,), daemon=True, name="retention-job")
    t.start()
    return t
