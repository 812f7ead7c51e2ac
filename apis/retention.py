from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from core.auth import get_current_user, is_privileged
from core.capture import TrackingConfig, tracked
from core.errors import ValidationError
from core.models.enums import ActivityAction
from core.retention_service import RetentionEngine, RetentionPolicyStore
from .base import error_response, success_response


router = APIRouter(prefix="/admin/activity", tags=["数据保留"])


class CleanupRequest(BaseModel):
    action: str = Field(default="", max_length=32)
    dryRun: bool = Field(default=False)
    policy: Optional[Dict[str, Any]] = Field(default=None)
    policyName: str = Field(default="", max_length=120)


class PurgeRequest(BaseModel):
    olderThanDays: Any = Field(default=None)
    confirm: Any = Field(default=None)


def get_retention_engine(request: Request) -> RetentionEngine:
    """进程级引擎在启动时挂到 app.state 上。"""
    engine = getattr(request.app.state, "retention_engine", None)
    if engine is None:
        engine = RetentionEngine(RetentionPolicyStore.with_defaults())
        request.app.state.retention_engine = engine
    return engine


def _require_admin(current_user: dict):
    if not is_privileged(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行")


@router.get("/cleanup", summary="获取保留统计与策略")
@tracked(TrackingConfig(
    action=ActivityAction.READ,
    resource="admin_activity_cleanup",
    description="Get retention statistics and policies",
    tags=("admin", "activity", "cleanup", "stats"),
))
async def retention_overview(
    request: Request,
    action: str = Query("", max_length=16),
    current_user: dict = Depends(get_current_user),
    engine: RetentionEngine = Depends(get_retention_engine),
):
    _require_admin(current_user)
    if action == "stats":
        return success_response(engine.get_retention_stats())
    if action == "policies":
        return success_response(engine.list_policies())
    return success_response({
        "stats": engine.get_retention_stats(),
        "policies": engine.list_policies(),
    })


@router.post("/cleanup", summary="执行清理或管理保留策略")
@tracked(TrackingConfig(
    action=ActivityAction.CREATE,
    resource="admin_activity_cleanup",
    description="Execute cleanup or manage retention policies",
    tags=("admin", "activity", "cleanup", "execute"),
))
async def retention_cleanup(
    request: Request,
    payload: CleanupRequest,
    current_user: dict = Depends(get_current_user),
    engine: RetentionEngine = Depends(get_retention_engine),
):
    _require_admin(current_user)
    if payload.action == "cleanup":
        result = engine.execute_cleanup(dry_run=payload.dryRun, requested_by=current_user.get("user_id"))
        message = "试运行完成" if payload.dryRun else "清理完成"
        if result["errors"]:
            message = f"{message}，{len(result['errors'])} 条策略失败"
        return success_response(result, message=message)

    if payload.action == "add_policy":
        if not payload.policy:
            raise ValidationError("缺少策略内容", fields={"policy": "required"})
        policy = engine.add_policy(payload.policy)
        return success_response(policy.to_dict(), message=f"策略 {policy.name} 已添加")

    if payload.action == "remove_policy":
        if not payload.policyName:
            raise ValidationError("缺少策略名称", fields={"policyName": "required"})
        if not engine.remove_policy(payload.policyName):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=error_response(code=40401, message=f"策略 {payload.policyName} 不存在", data={"removed": False}),
            )
        return success_response({"removed": True}, message=f"策略 {payload.policyName} 已删除")

    raise ValidationError("不支持的 action", fields={"action": "must be one of cleanup, add_policy, remove_policy"})


@router.delete("/cleanup", summary="紧急清理（不可恢复）")
@tracked(TrackingConfig(
    action=ActivityAction.DELETE,
    resource="admin_activity_cleanup",
    description="Emergency cleanup with immediate deletion",
    tags=("admin", "activity", "cleanup", "emergency"),
))
async def emergency_cleanup(
    request: Request,
    payload: PurgeRequest,
    current_user: dict = Depends(get_current_user),
    engine: RetentionEngine = Depends(get_retention_engine),
):
    result = engine.emergency_purge(current_user, payload.olderThanDays, payload.confirm)
    return success_response(result, message="紧急清理完成")
