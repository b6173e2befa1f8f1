from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ethicsflow.core.errors import PermissionDenied

# 中文注释：
# - 这里集中定义“角色 -> 动作”权限矩阵，避免权限逻辑散落在各路由与服务里。
# - 服务层每个操作都显式接收 Principal，并在入口调用 require_action。

ADMIN_ROLE = "admin"
RESEARCHER_ROLE = "researcher"
STAFF_ROLE = "staff"
SECRETARIAT_ROLE = "secretariat"
REVIEWER_ROLE = "reviewer"

STAFF_ROLES = frozenset({STAFF_ROLE, SECRETARIAT_ROLE, ADMIN_ROLE})

ROLE_ACTIONS: dict[str, set[str]] = {
    RESEARCHER_ROLE: {
        "submission:create",
        "submission:upload",
        "submission:resubmit",
    },
    REVIEWER_ROLE: {
        "review:submit",
        "review:reply",
        "review:view_evaluations",
        "conflict:declare",
    },
    STAFF_ROLE: {
        "submission:view_all",
        "submission:upload_consolidated",
        "submission:verify",
        "submission:request_revision",
        "submission:reject",
        "reviewer:assign",
        "review:view_evaluations",
        "conflict:resolve",
        "artifact:repair",
    },
    SECRETARIAT_ROLE: {
        "submission:view_all",
        "submission:upload_consolidated",
        "submission:classify",
        "submission:request_revision",
        "submission:reject",
        "reviewer:assign",
        "review:view_evaluations",
        "conflict:resolve",
        "artifact:repair",
    },
    ADMIN_ROLE: {
        "*",
    },
}


def normalize_roles(roles: Iterable[str] | None) -> set[str]:
    """
    将输入角色归一化（小写、去空）。
    """
    out: set[str] = set()
    for raw in roles or []:
        role = str(raw or "").strip().lower()
        if not role:
            continue
        out.add(role)
    return out


def can_perform_action(*, action: str, roles: Iterable[str] | None) -> bool:
    normalized = normalize_roles(roles)
    if ADMIN_ROLE in normalized:
        return True

    for role in normalized:
        allowed = ROLE_ACTIONS.get(role) or set()
        if "*" in allowed or action in allowed:
            return True
    return False


@dataclass(frozen=True)
class Principal:
    """
    当前调用者（身份 + 角色）。核心服务不读取任何会话状态，全部通过参数传入。
    """

    id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    email: str | None = None

    @classmethod
    def from_profile(cls, profile: dict) -> "Principal":
        return cls(
            id=str(profile.get("id") or ""),
            roles=frozenset(normalize_roles(profile.get("roles") or [])),
            email=profile.get("email"),
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles or ADMIN_ROLE in self.roles

    @property
    def is_staff(self) -> bool:
        return bool(self.roles & STAFF_ROLES)

    def can(self, action: str) -> bool:
        return can_perform_action(action=action, roles=self.roles)


def require_action(principal: Principal, action: str) -> None:
    if not principal.can(action):
        raise PermissionDenied(f"Action '{action}' is not allowed for roles {sorted(principal.roles)}")
