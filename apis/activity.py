from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from core.analytics_service import parse_range_bound
from core.auth import get_current_user, get_optional_user, is_privileged
from core.capture import TrackingConfig, client_ip, telemetry_enabled, tracked
from core.db import DB
from core.errors import ValidationError
from core.live_feed import MAX_POLL_LIMIT, MAX_WAIT_SECONDS, LiveFilters, get_live_feed
from core.models.enums import ActivityAction
from core.telemetry_store import append_activities, append_system_events, get_user_activity_history
from .base import success_response


router = APIRouter(prefix="/activity", tags=["操作记录"])


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    items = [x.strip() for x in value.split(",") if x.strip()]
    return items or None


def _extract_batch(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError("请求体必须是对象或数组", fields={"body": "must be an object or array"})
    for key in ("activities", "events"):
        if key in payload:
            items = payload[key]
            if not isinstance(items, list):
                raise ValidationError(f"{key} 必须是数组", fields={key: "must be an array"})
            return items
    # 单条事件
    return [payload]


@router.post("/track", summary="批量写入操作记录")
async def track_activities(
    request: Request,
    payload: Any = Body(...),
    current_user: Optional[dict] = Depends(get_optional_user),
):
    if not telemetry_enabled():
        return success_response({"accepted": 0, "rejected": [], "total": 0}, message="操作记录已关闭")

    items = _extract_batch(payload)
    fallback = {
        "user_id": (current_user or {}).get("user_id"),
        "session_id": str(request.headers.get("X-Session-Id", "") or "").strip()[:120] or None,
        "ip_address": client_ip(request) or None,
        "user_agent": str(request.headers.get("User-Agent", "") or "")[:500] or None,
    }
    session = DB.get_session()
    try:
        result = append_activities(session, items, fallback=fallback)
    finally:
        session.close()
    message = "success" if not result["rejected"] else f"部分记录被拒绝: {len(result['rejected'])}"
    return success_response(result, message=message)


@router.get("/track", summary="获取本人操作记录")
@tracked(TrackingConfig(
    action=ActivityAction.READ,
    resource="activity_tracking",
    description="Get user activity history",
    tags=("activity", "history", "analytics"),
))
async def activity_history(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    actions: Optional[str] = Query(None),
    resources: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        data = get_user_activity_history(
            session,
            current_user["user_id"],
            limit=limit,
            offset=offset,
            start_date=parse_range_bound(start_date, "startDate"),
            end_date=parse_range_bound(end_date, "endDate", end_of_day=True),
            actions=_split(actions),
            resources=_split(resources),
            severities=_split(severity),
        )
        return success_response(data)
    finally:
        session.close()



def _require_admin(current_user: dict):
    if not is_privileged(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行")


@router.post("/events", summary="批量写入系统 / 安全事件")
@tracked(TrackingConfig(
    action=ActivityAction.CREATE,
    resource="system_events",
    description="Ingest system and security events",
    tags=("activity", "system", "security"),
))
async def track_system_events(
    request: Request,
    payload: Any = Body(...),
    current_user: dict = Depends(get_current_user),
):
    _require_admin(current_user)
    items = _extract_batch(payload)
    fallback = {
        "user_id": current_user.get("user_id"),
        "ip_address": client_ip(request) or None,
        "user_agent": str(request.headers.get("User-Agent", "") or "")[:500] or None,
    }
    session = DB.get_session()
    try:
        result = append_system_events(session, items, fallback=fallback)
    finally:
        session.close()
    message = "success" if not result["rejected"] else f"部分事件被拒绝: {len(result['rejected'])}"
    return success_response(result, message=message)


@router.get("/live", summary="实时操作流（长轮询）")
def activity_live(
    since: Optional[int] = Query(None, ge=0, description="上次返回的 cursor，为空时从当前位置开始"),
    wait: float = Query(0, ge=0, le=MAX_WAIT_SECONDS, description="无新事件时最多等待的秒数"),
    limit: int = Query(100, ge=1, le=MAX_POLL_LIMIT),
    severity: Optional[str] = Query(None),
    actions: Optional[str] = Query(None),
    resources: Optional[str] = Query(None),
    user_ids: Optional[str] = Query(None, alias="userIds"),
    current_user: dict = Depends(get_current_user),
):
    # 同步函数，长轮询等待在线程池里进行
    _require_admin(current_user)
    filters = LiveFilters(
        severities=_split(severity),
        actions=_split(actions),
        resources=_split(resources),
        user_ids=_split(user_ids),
    )
    return success_response(get_live_feed().poll(since=since, filters=filters, limit=limit, wait=wait))
