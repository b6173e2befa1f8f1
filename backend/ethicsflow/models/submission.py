from __future__ import annotations

from enum import Enum


class Classification(str, Enum):
    EXEMPTED = "Exempted"
    EXPEDITED = "Expedited"
    FULL_REVIEW = "Full Review"


class SubmissionStatus(str, Enum):
    """
    伦理审查稿件的生命周期状态（封闭集合）。

    中文注释:
    - 只有 SubmissionStateMachine 可以写 submissions.status；
    - 两个被允许的“回退”环：needs_revision（修订环）与 conflict_of_interest（暂停环）。
    """

    NEW_SUBMISSION = "new_submission"
    AWAITING_CLASSIFICATION = "awaiting_classification"
    CLASSIFIED = "classified"
    UNDER_REVIEW = "under_review"
    CONFLICT_OF_INTEREST = "conflict_of_interest"
    NEEDS_REVISION = "needs_revision"
    APPROVED = "approved"
    REVIEW_COMPLETE = "review_complete"
    REJECTED = "rejected"

    @classmethod
    def allowed_next(cls, current: str) -> set[str]:
        """
        状态机规则必须显性可见：

        - new_submission -> awaiting_classification / needs_revision / rejected
        - awaiting_classification -> classified / needs_revision / rejected
        - classified -> under_review / approved (Exempted 直接批准)
        - under_review -> needs_revision / approved / conflict_of_interest
        - conflict_of_interest -> under_review
        - needs_revision -> new_submission / awaiting_classification / under_review（回到修订前状态）/ rejected
        - approved -> review_complete
        """
        c = (current or "").strip().lower()
        if c == cls.NEW_SUBMISSION.value:
            return {cls.AWAITING_CLASSIFICATION.value, cls.NEEDS_REVISION.value, cls.REJECTED.value}
        if c == cls.AWAITING_CLASSIFICATION.value:
            return {cls.CLASSIFIED.value, cls.NEEDS_REVISION.value, cls.REJECTED.value}
        if c == cls.CLASSIFIED.value:
            return {cls.UNDER_REVIEW.value, cls.APPROVED.value}
        if c == cls.UNDER_REVIEW.value:
            return {cls.NEEDS_REVISION.value, cls.APPROVED.value, cls.CONFLICT_OF_INTEREST.value}
        if c == cls.CONFLICT_OF_INTEREST.value:
            return {cls.UNDER_REVIEW.value}
        if c == cls.NEEDS_REVISION.value:
            return {
                cls.NEW_SUBMISSION.value,
                cls.AWAITING_CLASSIFICATION.value,
                cls.UNDER_REVIEW.value,
                cls.REJECTED.value,
            }
        if c == cls.APPROVED.value:
            return {cls.REVIEW_COMPLETE.value}
        return set()


TERMINAL_STATUSES = frozenset({SubmissionStatus.REVIEW_COMPLETE.value, SubmissionStatus.REJECTED.value})

# 修订前可以“回到”的状态：预审阶段退回与评审共识退回
REVISION_RETURN_STATUSES = frozenset(
    {
        SubmissionStatus.NEW_SUBMISSION.value,
        SubmissionStatus.AWAITING_CLASSIFICATION.value,
        SubmissionStatus.UNDER_REVIEW.value,
    }
)

PRE_REVIEW_STATUSES = frozenset(
    {SubmissionStatus.NEW_SUBMISSION.value, SubmissionStatus.AWAITING_CLASSIFICATION.value}
)


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    if not v:
        return None
    # 兼容旧门户写入的历史状态字符串
    legacy_map = {
        "pending": SubmissionStatus.NEW_SUBMISSION.value,
        "pending_verification": SubmissionStatus.NEW_SUBMISSION.value,
        "verified": SubmissionStatus.AWAITING_CLASSIFICATION.value,
        "revision": SubmissionStatus.NEEDS_REVISION.value,
        "under_revision": SubmissionStatus.NEEDS_REVISION.value,
        "revision_requested": SubmissionStatus.NEEDS_REVISION.value,
        "review_completed": SubmissionStatus.REVIEW_COMPLETE.value,
    }
    v = legacy_map.get(v, v)

    try:
        return SubmissionStatus(v).value
    except ValueError:
        return None


def normalize_classification(value: str | None) -> str | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    for item in Classification:
        if raw.lower() == item.value.lower() or raw.lower().replace("_", " ") == item.value.lower():
            return item.value
    return None
