import time
from datetime import datetime, timedelta
from threading import Thread

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger, trace_ctx
from core.metrics_generator import MetricsGenerator

logger = get_logger(__name__)


def _seconds_until(hour: int, now: datetime) -> float:
    target = now.replace(hour=hour, minute=5, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def run_daily_metrics(generator: MetricsGenerator = None, now: datetime = None) -> dict:
    generator = generator or MetricsGenerator()
    with trace_ctx():
        result = generator.generate_daily_metrics(now=now)
    if result["errors"]:
        log_event(logger, E.SYSTEM_JOB_FAIL, level="warning", job="metrics", errors=len(result["errors"]))
    return result


def _worker_loop():
    hour = max(0, min(23, int(cfg.get("metrics.job_hour", 1) or 0)))
    generator = MetricsGenerator()
    # 启动时先补一次前一天，重复生成是安全的
    while True:
        try:
            run_daily_metrics(generator)
        except Exception:
            logger.exception("每日指标生成异常")
        time.sleep(_seconds_until(hour, datetime.now()))


def start_metrics_worker():
    log_event(logger, E.SYSTEM_JOB_START, job="metrics", hour=cfg.get("metrics.job_hour", 1))
    t = Thread(target=_worker_loop, daemon=True, name="metrics-job")
    t.start()
    return t
