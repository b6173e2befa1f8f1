from __future__ import annotations

from typing import Any, Mapping

# conflict_of_interest_forms 上的布尔列；任意一项为 true 即视为利益冲突
CONFLICT_FLAG_FIELDS: tuple[str, ...] = (
    "has_stock_ownership",
    "has_received_compensation",
    "has_official_role",
    "has_prior_work_experience",
    "has_standing_issue",
    "has_social_relationship",
    "has_ownership_interest",
)


def is_conflicted(form: Mapping[str, Any] | None) -> bool:
    if not form:
        return False
    return any(bool(form.get(field)) for field in CONFLICT_FLAG_FIELDS)


def active_flags(form: Mapping[str, Any] | None) -> list[str]:
    if not form:
        return []
    return [field for field in CONFLICT_FLAG_FIELDS if bool(form.get(field))]
