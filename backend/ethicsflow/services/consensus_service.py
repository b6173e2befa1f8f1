from __future__ import annotations

import logging
from typing import Any, Optional

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import (
    DuplicateSubmission,
    InvalidTransition,
    NotComplete,
    NotEligible,
    NotFound,
    PermissionDenied,
    StaleRead,
    WorkflowError,
)
from ethicsflow.core.role_matrix import Principal, require_action
from ethicsflow.core.submission_locks import SubmissionLockRegistry, submission_locks
from ethicsflow.models.documents import DocumentType
from ethicsflow.models.review import (
    CONSENT_SECTION,
    OPEN_ASSIGNMENT_STATUSES,
    PROTOCOL_SECTION,
    SECTION_FIELDS,
    AssignmentStatus,
    ConsensusOutcome,
    ReviewStatus,
    compute_outcome,
    parse_recommendation,
    vetoing_sections,
)
from ethicsflow.models.submission import SubmissionStatus, normalize_status
from ethicsflow.services import workflow_events as events
from ethicsflow.services.assignment_service import current_round, required_reviewers
from ethicsflow.services.state_machine import SubmissionStateMachine
from ethicsflow.services.submission_store import SubmissionStore, utc_now_iso

logger = logging.getLogger("ethicsflow.consensus")

REVIEW_TEXT_FIELDS: tuple[str, ...] = (
    "protocol_disapproval_reasons",
    "protocol_ethics_recommendation",
    "protocol_technical_suggestions",
    "icf_disapproval_reasons",
    "icf_ethics_recommendation",
    "icf_technical_suggestions",
)

REVIEW_ANSWER_FIELDS: tuple[str, ...] = ("protocol_answers", "consent_answers")

# 否决章节 -> 需要研究者重新上传的原始文件
SECTION_DOCUMENT_TYPES: dict[str, str] = {
    PROTOCOL_SECTION: DocumentType.RESEARCH_PROTOCOL.value,
    CONSENT_SECTION: DocumentType.CONSENT_FORM.value,
}

SECTION_ETHICS_FIELDS: dict[str, str] = {
    PROTOCOL_SECTION: "protocol_ethics_recommendation",
    CONSENT_SECTION: "icf_ethics_recommendation",
}

ACCEPTING_REVIEW_STATUSES = frozenset(
    {SubmissionStatus.UNDER_REVIEW.value, SubmissionStatus.CONFLICT_OF_INTEREST.value}
)


def _clean_payload(payload: dict[str, Any], *, require_recommendations: bool) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for field in REVIEW_ANSWER_FIELDS:
        value = payload.get(field)
        out[field] = dict(value) if isinstance(value, dict) else {}
    for field in REVIEW_TEXT_FIELDS:
        value = payload.get(field)
        out[field] = str(value).strip() if value is not None else None
    for section, field in SECTION_FIELDS.items():
        raw = payload.get(field)
        rec = parse_recommendation(raw)
        if rec is None and (require_recommendations or raw not in (None, "")):
            raise WorkflowError(f"A valid {section} recommendation is required", field=field)
        out[field] = rec.value if rec else None
    return out


def revision_request_from_reviews(reviews: list[dict[str, Any]]) -> tuple[list[str], str]:
    """
    从否决意见推导需要修改的文件类型，并汇总审稿人的伦理建议作为退修意见。
    """
    flagged: list[str] = []
    notes: list[str] = []
    for idx, review in enumerate(reviews, start=1):
        for section in sorted(vetoing_sections(review)):
            doc_type = SECTION_DOCUMENT_TYPES[section]
            if doc_type not in flagged:
                flagged.append(doc_type)
            text = str(review.get(SECTION_ETHICS_FIELDS[section]) or "").strip()
            if text:
                label = "Protocol" if section == PROTOCOL_SECTION else "Informed consent"
                notes.append(f"Reviewer {idx} ({label}): {text}")
    return flagged, "\n".join(notes)


class ReviewConsensusEngine:
    """
    多审稿人共识引擎。

    中文注释:
    1) isComplete 每次都从当前轮次的分配行重新计算，不维护任何计数器。
    2) 只有一个调用者能推进状态：提交在 per-submission 锁内进行，状态写入本身是 CAS。
    3) 审稿意见一经提交不可修改，只能追加回复（review_replies）。
    """

    def __init__(
        self,
        store: SubmissionStore,
        state_machine: SubmissionStateMachine,
        policy: ReviewPolicyConfig,
        *,
        bus: events.WorkflowEventBus,
        locks: SubmissionLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.policy = policy
        self.bus = bus
        self.locks = locks or submission_locks

    # --- 查询 ---

    def _round_assignments(self, submission: dict[str, Any]) -> list[dict[str, Any]]:
        return self.store.list_assignments(str(submission["id"]), review_round=current_round(submission))

    def _assignment_for(self, submission: dict[str, Any], reviewer_id: str) -> Optional[dict[str, Any]]:
        for row in self._round_assignments(submission):
            if str(row.get("reviewer_id")) == str(reviewer_id):
                return row
        return None

    def is_complete(self, submission_id: str) -> bool:
        submission = self.store.get_submission(submission_id)
        assignments = self._round_assignments(submission)
        if not assignments:
            return False
        if len(assignments) < required_reviewers(submission, self.policy):
            return False
        return all(a.get("status") == AssignmentStatus.REVIEW_COMPLETE.value for a in assignments)

    def counted_reviews(self, submission: dict[str, Any]) -> list[dict[str, Any]]:
        """
        当前轮次、且所属分配仍然存在的已提交审稿意见（被移除审稿人的意见永远不计入）。
        """
        active_ids = {str(a.get("id")) for a in self._round_assignments(submission)}
        return [
            r
            for r in self.store.list_reviews(
                str(submission["id"]),
                review_round=current_round(submission),
                status=ReviewStatus.SUBMITTED.value,
            )
            if str(r.get("assignment_id")) in active_ids
        ]

    def compute_outcome(self, submission_id: str) -> ConsensusOutcome:
        if not self.is_complete(submission_id):
            raise NotComplete("Not all assigned reviewers have submitted", submission_id=str(submission_id))
        submission = self.store.get_submission(submission_id)
        return compute_outcome(self.counted_reviews(submission))

    # --- 写入 ---

    def _writable_assignment(self, principal: Principal, submission: dict[str, Any]) -> dict[str, Any]:
        status = normalize_status(submission.get("status"))
        if status not in ACCEPTING_REVIEW_STATUSES:
            raise NotEligible(f"Submission is not accepting reviews while {status}", status=status)
        assignment = self._assignment_for(submission, principal.id)
        if not assignment:
            raise NotEligible("You have no active assignment on this submission")
        if assignment.get("status") == AssignmentStatus.REVIEW_COMPLETE.value:
            raise DuplicateSubmission("Review already submitted for this assignment")
        return assignment

    def save_draft(self, principal: Principal, submission_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        require_action(principal, "review:submit")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            assignment = self._writable_assignment(principal, submission)
            fields = _clean_payload(payload, require_recommendations=False)

            existing = self.store.find_review_for_assignment(str(assignment["id"]))
            if existing and existing.get("status") == ReviewStatus.SUBMITTED.value:
                raise DuplicateSubmission("Review already submitted for this assignment")

            if existing:
                # 草稿只覆盖本次传入的字段，之前保存的章节保持不变
                partial = {k: v for k, v in fields.items() if k in payload}
                review = (
                    self.store.update_review(str(existing["id"]), partial, expected_status=ReviewStatus.DRAFT.value)
                    if partial
                    else existing
                )
                if not review:
                    raise DuplicateSubmission("Review already submitted for this assignment")
            else:
                review = self.store.insert_review(
                    {
                        **fields,
                        "submission_id": str(submission_id),
                        "reviewer_id": principal.id,
                        "assignment_id": str(assignment["id"]),
                        "review_round": current_round(submission),
                        "status": ReviewStatus.DRAFT.value,
                        "submitted_at": None,
                    }
                )

            if assignment.get("status") == AssignmentStatus.PENDING.value:
                self.store.update_assignment(
                    str(assignment["id"]),
                    {"status": AssignmentStatus.UNDER_REVIEW.value},
                    expected_statuses=[AssignmentStatus.PENDING.value],
                )
            return review

    def submit(self, principal: Principal, submission_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        require_action(principal, "review:submit")
        fields = _clean_payload(payload, require_recommendations=True)

        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            assignment = self._writable_assignment(principal, submission)

            existing = self.store.find_review_for_assignment(str(assignment["id"]))
            if existing and existing.get("status") == ReviewStatus.SUBMITTED.value:
                raise DuplicateSubmission("Review already submitted for this assignment")

            now = utc_now_iso()
            # 分配状态的 CAS 是写一次的闸门：只有一个请求能把它从 open 改成 review_complete
            completed = self.store.update_assignment(
                str(assignment["id"]),
                {"status": AssignmentStatus.REVIEW_COMPLETE.value, "completed_at": now},
                expected_statuses=sorted(OPEN_ASSIGNMENT_STATUSES),
            )
            if not completed:
                raise DuplicateSubmission("Review already submitted for this assignment")

            review_fields = {**fields, "status": ReviewStatus.SUBMITTED.value, "submitted_at": now}
            try:
                if existing:
                    review = self.store.update_review(
                        str(existing["id"]), review_fields, expected_status=ReviewStatus.DRAFT.value
                    )
                    if not review:
                        raise DuplicateSubmission("Review already submitted for this assignment")
                else:
                    review = self.store.insert_review(
                        {
                            **review_fields,
                            "submission_id": str(submission_id),
                            "reviewer_id": principal.id,
                            "assignment_id": str(assignment["id"]),
                            "review_round": current_round(submission),
                        }
                    )
            except Exception:
                # 审稿意见没写进去：分配必须回到原状态，否则 isComplete 会在少一份意见的情况下变成 true
                self.store.update_assignment(
                    str(assignment["id"]),
                    {"status": assignment.get("status") or AssignmentStatus.PENDING.value, "completed_at": None},
                    expected_statuses=[AssignmentStatus.REVIEW_COMPLETE.value],
                )
                logger.error(
                    f"[Consensus] review write failed, assignment reopened: "
                    f"submission_id={submission_id} assignment_id={assignment['id']}"
                )
                raise

            self.bus.publish(
                events.REVIEW_COMPLETE,
                {
                    "submission_id": str(submission_id),
                    "reviewer_id": principal.id,
                    "assignment_id": str(assignment["id"]),
                },
            )
            outcome = self._advance_if_complete(submission_id, actor_id=principal.id)

        return {
            "review": review,
            "is_complete": outcome is not None or self.is_complete(submission_id),
            "outcome": outcome.value if outcome else None,
        }

    def _advance_if_complete(self, submission_id: str, *, actor_id: str) -> Optional[ConsensusOutcome]:
        submission = self.store.get_submission(submission_id)
        if normalize_status(submission.get("status")) != SubmissionStatus.UNDER_REVIEW.value:
            return None
        if not self.is_complete(submission_id):
            return None

        reviews = self.counted_reviews(submission)
        outcome = compute_outcome(reviews)
        flagged, comment = revision_request_from_reviews(reviews)
        try:
            self.state_machine.advance_on_consensus(
                submission_id,
                outcome,
                actor_id=actor_id,
                flagged_types=flagged,
                comment=comment,
            )
        except (InvalidTransition, StaleRead) as e:
            # 另一个请求已经推进了状态
            logger.info(f"[Consensus] outcome already applied: submission_id={submission_id} ({e.detail})")
            return None
        logger.info(f"[Consensus] submission_id={submission_id} outcome={outcome.value}")
        return outcome

    # --- 合并评审视图与回复 ---

    def _can_view(self, principal: Principal, submission: dict[str, Any]) -> bool:
        if principal.can("submission:view_all"):
            return True
        assignments = self.store.list_assignments(str(submission["id"]))
        return any(str(a.get("reviewer_id")) == principal.id for a in assignments)

    def require_viewer(self, principal: Principal, submission_id: str) -> dict[str, Any]:
        require_action(principal, "review:view_evaluations")
        submission = self.store.get_submission(submission_id)
        if not self._can_view(principal, submission):
            raise PermissionDenied("You are not assigned to this submission")
        return submission

    def evaluations(self, principal: Principal, submission_id: str) -> list[dict[str, Any]]:
        submission = self.require_viewer(principal, submission_id)
        reviews = self.counted_reviews(submission)
        replies = self.store.list_replies([str(r.get("id")) for r in reviews])
        by_review: dict[str, list[dict[str, Any]]] = {}
        for reply in replies:
            by_review.setdefault(str(reply.get("review_id")), []).append(reply)
        return [{**review, "replies": by_review.get(str(review.get("id")), [])} for review in reviews]

    def post_reply(self, principal: Principal, review_id: str, reply_text: str) -> dict[str, Any]:
        require_action(principal, "review:reply")
        text = str(reply_text or "").strip()
        if not text:
            raise WorkflowError("Reply text is required")

        review = self.store.get_review(review_id)
        if not review:
            raise NotFound("Review not found", review_id=str(review_id))
        if review.get("status") != ReviewStatus.SUBMITTED.value:
            raise NotEligible("Replies are only allowed on submitted reviews")
        submission = self.store.get_submission(str(review.get("submission_id")))
        if not self._can_view(principal, submission):
            raise PermissionDenied("You are not assigned to this submission")

        now = utc_now_iso()
        return self.store.insert_reply(
            {
                "review_id": str(review_id),
                "reviewer_id": principal.id,
                "reply_text": text,
                "created_at": now,
                "updated_at": now,
            }
        )

    def _own_reply(self, principal: Principal, reply_id: str) -> dict[str, Any]:
        reply = self.store.get_reply(reply_id)
        if not reply:
            raise NotFound("Reply not found", reply_id=str(reply_id))
        if str(reply.get("reviewer_id")) != principal.id:
            raise PermissionDenied("You can only change your own replies")
        return reply

    def edit_reply(self, principal: Principal, reply_id: str, reply_text: str) -> dict[str, Any]:
        require_action(principal, "review:reply")
        text = str(reply_text or "").strip()
        if not text:
            raise WorkflowError("Reply text is required")
        self._own_reply(principal, reply_id)
        updated = self.store.update_reply(reply_id, {"reply_text": text, "updated_at": utc_now_iso()})
        if not updated:
            raise NotFound("Reply not found", reply_id=str(reply_id))
        return updated

    def delete_reply(self, principal: Principal, reply_id: str) -> None:
        require_action(principal, "review:reply")
        self._own_reply(principal, reply_id)
        self.store.delete_reply(reply_id)
