"""
调用方身份解析。

角色体系（RBAC）由外部系统维护，这里只把 Bearer JWT 解成
{"user_id", "username", "role"}，供遥测管线做“本人 / 全站”数据范围判断。
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from core.config import cfg, API_BASE

SECRET_KEY = str(cfg.get("secret", "telemetry-dev-secret"))
ALGORITHM = "HS256"

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super_admin"
PRIVILEGED_ROLES = {ROLE_ADMIN, ROLE_SUPER_ADMIN}

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API_BASE}/auth/token", auto_error=False)


def create_access_token(user_id: str, username: str = "", role: str = ROLE_USER, expires_minutes: int = 60) -> str:
    payload = {
        "sub": str(username or user_id),
        "uid": str(user_id),
        "role": str(role or ROLE_USER),
        "exp": datetime.utcnow() + timedelta(minutes=max(1, int(expires_minutes))),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """解析 JWT，失败返回空 dict。"""
    text = str(token or "").strip()
    if not text:
        return {}
    try:
        payload = jwt.decode(text, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return {}
    user_id = str(payload.get("uid") or payload.get("sub") or "").strip()
    if not user_id:
        return {}
    return {
        "user_id": user_id[:255],
        "username": str(payload.get("sub") or "").strip()[:50],
        "role": str(payload.get("role") or ROLE_USER).strip().lower(),
    }


def parse_bearer_user(authorization: str) -> Dict[str, Any]:
    text = str(authorization or "").strip()
    if not text.lower().startswith("bearer "):
        return {}
    return decode_token(text[7:])


def is_privileged(caller: Optional[Dict[str, Any]]) -> bool:
    return bool(caller) and str(caller.get("role") or "").lower() in PRIVILEGED_ROLES


def is_super_admin(caller: Optional[Dict[str, Any]]) -> bool:
    return bool(caller) and str(caller.get("role") or "").lower() == ROLE_SUPER_ADMIN


async def get_optional_user(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Dict[str, Any]]:
    user = decode_token(token or "")
    return user or None


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> Dict[str, Any]:
    user = decode_token(token or "")
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未登录或登录已过期",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
