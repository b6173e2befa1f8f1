from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    REVIEW_COMPLETE = "review_complete"


OPEN_ASSIGNMENT_STATUSES = frozenset(
    {AssignmentStatus.PENDING.value, AssignmentStatus.UNDER_REVIEW.value}
)


class ReviewStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"


class Recommendation(str, Enum):
    """
    审稿结论（有序）：No Revision < Minor < Major < Disapproved。
    """

    APPROVED = "Approved (No Revision)"
    MINOR_REVISION = "Approved with Minor Revision/s"
    MAJOR_REVISION = "Major Revision/s"
    DISAPPROVED = "Disapproved"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @property
    def blocks_approval(self) -> bool:
        return self.rank >= _RANKS[Recommendation.MAJOR_REVISION]


_RANKS = {
    Recommendation.APPROVED: 0,
    Recommendation.MINOR_REVISION: 1,
    Recommendation.MAJOR_REVISION: 2,
    Recommendation.DISAPPROVED: 3,
}

# 旧表单里出现过的写法（无 "/s" 后缀、全小写等）
_RECOMMENDATION_ALIASES = {
    "approved": Recommendation.APPROVED,
    "approved (no revision)": Recommendation.APPROVED,
    "no revision": Recommendation.APPROVED,
    "approved with minor revision": Recommendation.MINOR_REVISION,
    "approved with minor revision/s": Recommendation.MINOR_REVISION,
    "approved with minor revisions": Recommendation.MINOR_REVISION,
    "minor revision": Recommendation.MINOR_REVISION,
    "major revision": Recommendation.MAJOR_REVISION,
    "major revision/s": Recommendation.MAJOR_REVISION,
    "major revisions": Recommendation.MAJOR_REVISION,
    "disapproved": Recommendation.DISAPPROVED,
}


def parse_recommendation(value: Any) -> Recommendation | None:
    if isinstance(value, Recommendation):
        return value
    text = " ".join(str(value or "").strip().lower().split())
    if not text:
        return None
    return _RECOMMENDATION_ALIASES.get(text)


class ConsensusOutcome(str, Enum):
    NEEDS_REVISION = "needs_revision"
    APPROVED = "approved"


PROTOCOL_SECTION = "protocol"
CONSENT_SECTION = "informed_consent"

SECTION_FIELDS: dict[str, str] = {
    PROTOCOL_SECTION: "protocol_recommendation",
    CONSENT_SECTION: "icf_recommendation",
}


def vetoing_sections(review: Mapping[str, Any]) -> set[str]:
    """
    返回该审稿意见中给出 Major Revision/s 或 Disapproved 的章节。
    """
    out: set[str] = set()
    for section, field in SECTION_FIELDS.items():
        rec = parse_recommendation(review.get(field))
        if rec is not None and rec.blocks_approval:
            out.add(section)
    return out


def compute_outcome(reviews: Iterable[Mapping[str, Any]]) -> ConsensusOutcome:
    """
    多位审稿人的结论合并为一个结果。

    规则：任意一位审稿人在任意一个章节（研究方案 / 知情同意）给出 Major Revision/s 或
    Disapproved，即为 NeedsRevision；否则 Approved。与提交顺序无关。
    """
    for review in reviews:
        if vetoing_sections(review):
            return ConsensusOutcome.NEEDS_REVISION
    return ConsensusOutcome.APPROVED
