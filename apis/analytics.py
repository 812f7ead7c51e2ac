from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from core.analytics_service import execute_custom_query, parse_range_bound, query_analytics
from core.auth import get_current_user, is_privileged
from core.capture import TrackingConfig, tracked
from core.db import DB
from core.metrics_generator import MetricsGenerator
from core.models.enums import ActivityAction
from .base import success_response


router = APIRouter(prefix="/activity", tags=["运营分析"])


class CustomQueryRequest(BaseModel):
    query: str = Field(default="", max_length=80)
    parameters: Optional[Dict[str, Any]] = Field(default=None)


def _require_admin(current_user: dict):
    if not is_privileged(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行")


@router.get("/analytics", summary="按时间分桶的操作统计")
@tracked(TrackingConfig(
    action=ActivityAction.READ,
    resource="activity_analytics",
    description="Get activity analytics",
    tags=("activity", "analytics"),
))
async def activity_analytics(
    request: Request,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    group_by: str = Query("day", alias="groupBy"),
    user_id: Optional[str] = Query(None, alias="userId"),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        data = query_analytics(
            session,
            current_user,
            start_date=start_date,
            end_date=end_date,
            group_by=group_by,
            user_id=user_id,
        )
        return success_response(data)
    finally:
        session.close()


@router.post("/analytics", summary="执行白名单内的自定义分析查询")
@tracked(TrackingConfig(
    action=ActivityAction.READ,
    resource="activity_analytics",
    description="Execute custom analytics query",
    tags=("activity", "analytics", "custom"),
))
async def custom_analytics(
    request: Request,
    payload: CustomQueryRequest,
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        data = execute_custom_query(session, current_user, payload.query, payload.parameters)
        return success_response(data)
    finally:
        session.close()


@router.get("/metrics", summary="查询聚合指标")
async def activity_metrics(
    metric_type: Optional[str] = Query(None, alias="metricType", max_length=120),
    period: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    limit: int = Query(500, ge=1, le=5000),
    current_user: dict = Depends(get_current_user),
):
    _require_admin(current_user)
    generator = MetricsGenerator()
    rows = generator.list_metrics(
        metric_type=metric_type,
        period=period,
        start=parse_range_bound(start_date, "startDate"),
        end=parse_range_bound(end_date, "endDate", end_of_day=True),
        limit=limit,
    )
    return success_response({"summary": generator.get_metrics_summary(), "list": rows})
