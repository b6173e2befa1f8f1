import logging
import os
from typing import Callable, Iterable, Optional, Set

from fastapi import Depends, HTTPException

from ethicsflow.core.auth_utils import get_current_user
from ethicsflow.core.role_matrix import Principal
from ethicsflow.lib.api_client import supabase_admin

logger = logging.getLogger("ethicsflow.auth")


def _parse_admin_emails() -> Set[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def _is_admin_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in _parse_admin_emails()


async def get_current_profile(current_user: dict = Depends(get_current_user)) -> dict:
    """
    获取当前用户的 profile（含 roles）。

    中文注释:
    1) 角色存放在 user_profiles.roles 数组中（应用层角色管理）。
    2) 首次访问时自动创建 user_profiles 记录，默认 roles=['researcher']。
    3) 若 email 在 ADMIN_EMAILS 中，则自动补齐 admin 权限，便于本地/演示测试。
    """
    user_id = current_user["id"]
    email = current_user.get("email")

    roles = ["researcher"]
    if _is_admin_email(email):
        roles = ["admin", "secretariat", "staff"]

    try:
        resp = supabase_admin.table("user_profiles").select("*").eq("id", user_id).limit(1).execute()
        existing = (resp.data or [None])[0]
        if existing:
            existing_roles = existing.get("roles") or []
            if _is_admin_email(email):
                merged = list(dict.fromkeys([*roles, *existing_roles]))
                if merged != existing_roles:
                    supabase_admin.table("user_profiles").update({"roles": merged}).eq("id", user_id).execute()
                    existing["roles"] = merged
            return existing

        inserted = (
            supabase_admin.table("user_profiles")
            .insert({"id": user_id, "email": email, "roles": roles})
            .execute()
        )
        return (inserted.data or [{"id": user_id, "email": email, "roles": roles}])[0]
    except Exception as e:
        logger.warning(f"Failed to fetch/create user profile: {e}")
        # 最小化降级：至少把用户身份返回给上层
        return {"id": user_id, "email": email, "roles": roles}


async def get_current_principal(profile: dict = Depends(get_current_profile)) -> Principal:
    return Principal.from_profile(profile)


def require_any_role(required: Iterable[str]) -> Callable[..., Principal]:
    required_set = {r for r in required}

    async def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.roles.intersection(required_set) and "admin" not in principal.roles:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return principal

    return _dep
