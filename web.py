import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.activity import router as activity_router
from apis.analytics import router as analytics_router
from apis.base import error_response, success_response
from apis.retention import router as retention_router
from core.capture import capture_requests, get_writer
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.errors import TelemetryError, ValidationError, status_for_error
from core.events import log_event, E
from core.log import get_logger, set_trace_id, setup_logging
from core.retention_service import RetentionEngine, RetentionPolicyStore

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保中文不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    DB.create_tables()
    writer = get_writer().start()
    engine = RetentionEngine(RetentionPolicyStore.with_defaults())
    app.state.retention_engine = engine

    if cfg.get("metrics.job_enabled", False):
        from jobs.metrics import start_metrics_worker
        start_metrics_worker()
    if cfg.get("retention.job_enabled", False):
        from jobs.retention import start_retention_worker
        start_retention_worker(engine)

    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, policies=len(engine.policies))
    yield
    # 停机前把采集队列写完
    writer.stop(timeout=float(cfg.get("telemetry.drain_timeout", 10) or 10))
    log_event(logger, E.SYSTEM_SHUTDOWN, **writer.stats())


app = FastAPI(
    title="Activity Telemetry API",
    description="操作记录采集、分析、指标与数据保留接口",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
    # 使用自定义 JSONResponse 确保中文不被转义为 \uXXXX
    default_response_class=UnicodeJSONResponse,
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(capture_requests)


@app.middleware("http")
async def add_custom_header(request: Request, call_next):
    trace_id = set_trace_id(request.headers.get("X-Request-Id"))
    response = await call_next(request)
    response.headers["X-Version"] = VERSION
    response.headers["X-Request-Id"] = trace_id
    return response


@app.exception_handler(TelemetryError)
async def telemetry_error_handler(request: Request, exc: TelemetryError):
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("请求处理失败 %s %s: %s", request.method, request.url.path, exc)
        message = "服务暂时不可用" if status_code == 503 else "服务器内部错误"
        return UnicodeJSONResponse(status_code=status_code, content=error_response(status_code, message))
    data = {"fields": exc.fields} if isinstance(exc, ValidationError) else None
    return UnicodeJSONResponse(
        status_code=status_code,
        content=error_response(status_code, str(getattr(exc, "message", "") or exc), data),
    )


# 创建API路由分组
api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(activity_router)
api_router.include_router(analytics_router)
api_router.include_router(retention_router)


@api_router.get("/health", tags=["默认"], summary="健康检查")
async def health():
    return success_response({"status": "ok", "version": VERSION, "writer": get_writer().stats()})


app.include_router(api_router)
