from __future__ import annotations

import logging
from typing import Any, Optional

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import DeclarationClosed, InvalidTransition, NotEligible, QuotaExceeded, StaleRead
from ethicsflow.core.role_matrix import Principal, require_action
from ethicsflow.core.submission_locks import SubmissionLockRegistry, submission_locks
from ethicsflow.models.conflict import CONFLICT_FLAG_FIELDS, active_flags, is_conflicted
from ethicsflow.models.review import AssignmentStatus
from ethicsflow.models.submission import SubmissionStatus, normalize_status
from ethicsflow.services.assignment_service import (
    ReviewerAssignmentManager,
    conflicted_reviewer_ids,
    current_round,
)
from ethicsflow.services.state_machine import SubmissionStateMachine
from ethicsflow.services.submission_store import SubmissionStore, utc_now_iso

logger = logging.getLogger("ethicsflow.conflicts")

REASSIGNABLE_STATUSES = frozenset(
    {SubmissionStatus.CONFLICT_OF_INTEREST.value, SubmissionStatus.UNDER_REVIEW.value}
)


class ConflictOfInterestResolver:
    """
    利益冲突：声明 -> 移除冲突审稿人 -> 补位。

    中文注释:
    1. 全部为 false 的声明是合法的“无冲突”记录，不影响分配。
    2. 移除分配是删除（不归档），其草稿审稿意见一起丢弃，空出的名额可以重新补位。
    3. 所有读取都在拿到 per-submission 锁之后重新进行，避免使用锁外的旧数据。
    """

    def __init__(
        self,
        store: SubmissionStore,
        state_machine: SubmissionStateMachine,
        assignments: ReviewerAssignmentManager,
        policy: ReviewPolicyConfig,
        *,
        locks: SubmissionLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.assignments = assignments
        self.policy = policy
        self.locks = locks or submission_locks

    def declare(
        self,
        principal: Principal,
        submission_id: str,
        flags: dict[str, Any],
        remarks: Optional[str] = None,
    ) -> dict[str, Any]:
        require_action(principal, "conflict:declare")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            assignment = next(
                (
                    a
                    for a in self.assignments.active_assignments(submission)
                    if str(a.get("reviewer_id")) == principal.id
                ),
                None,
            )
            if not assignment:
                raise NotEligible("Only reviewers with an active assignment may declare")
            if assignment.get("status") == AssignmentStatus.REVIEW_COMPLETE.value:
                raise DeclarationClosed("Review already submitted; declaration is closed")

            form = self.store.insert_conflict_form(
                {
                    "submission_id": str(submission_id),
                    "reviewer_id": principal.id,
                    **{field: bool((flags or {}).get(field)) for field in CONFLICT_FLAG_FIELDS},
                    "remarks": (str(remarks).strip() or None) if remarks is not None else None,
                    "created_at": utc_now_iso(),
                }
            )

            resolution: Optional[dict[str, Any]] = None
            if is_conflicted(form):
                logger.info(
                    f"[Conflicts] reviewer {principal.id} declared {active_flags(form)} on submission_id={submission_id}"
                )
                resolution = self._resolve_locked(submission_id, actor_id=principal.id)

        return {"form": form, "conflicted": is_conflicted(form), "resolution": resolution}

    def resolve(self, principal: Principal, submission_id: str) -> dict[str, Any]:
        require_action(principal, "conflict:resolve")
        with self.locks.hold(submission_id):
            return self._resolve_locked(submission_id, actor_id=principal.id)

    def _resolve_locked(self, submission_id: str, *, actor_id: Optional[str]) -> dict[str, Any]:
        submission = self.store.get_submission(submission_id)
        conflicted = conflicted_reviewer_ids(self.store.list_conflict_forms(submission_id))

        # 已提交的审稿意见不再撤回（声明在提交后关闭），只移除仍在进行中的分配
        to_remove = [
            a
            for a in self.assignments.active_assignments(submission)
            if str(a.get("reviewer_id")) in conflicted
            and a.get("status") != AssignmentStatus.REVIEW_COMPLETE.value
        ]
        if not to_remove:
            return {"removed_reviewer_ids": [], "status": normalize_status(submission.get("status"))}

        ids = [str(a.get("id")) for a in to_remove]
        self.store.delete_reviews_for_assignments(ids)
        self.store.delete_assignments(ids)
        removed = sorted(str(a.get("reviewer_id")) for a in to_remove)
        logger.info(f"[Conflicts] removed reviewer(s) {removed} from submission_id={submission_id}")

        status = normalize_status(submission.get("status"))
        if status == SubmissionStatus.UNDER_REVIEW.value:
            submission = self.state_machine.hold_for_conflict(
                submission_id,
                actor_id=actor_id,
                comment=f"removed {len(removed)} conflicted reviewer(s)",
            )
            status = normalize_status(submission.get("status"))
        return {"removed_reviewer_ids": removed, "status": status}

    def available_replacements(self, principal: Principal, submission_id: str) -> list[dict[str, Any]]:
        require_action(principal, "reviewer:assign")
        submission = self.store.get_submission(submission_id)
        return self.assignments.candidate_pool(submission)

    def reassign(self, principal: Principal, submission_id: str, new_reviewer_id: str) -> dict[str, Any]:
        """
        为空出的名额补位：新审稿人拿到完整的审查期限；名额补满后回到 under_review。
        """
        require_action(principal, "reviewer:assign")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            status = normalize_status(submission.get("status"))
            if status not in REASSIGNABLE_STATUSES:
                raise InvalidTransition(current=status, requested=SubmissionStatus.UNDER_REVIEW.value)

            required = self.assignments.required_reviewers(submission)
            active = self.assignments.active_assignments(submission)
            if len(active) >= required:
                raise QuotaExceeded(
                    "All reviewer slots for this submission are filled",
                    requested=1,
                    capacity=0,
                )

            ids = self.assignments.validate_candidates(submission, [new_reviewer_id], capacity=1)
            created = self.assignments.create_assignments(submission, ids)

            if status == SubmissionStatus.CONFLICT_OF_INTEREST.value and len(active) + len(created) >= required:
                try:
                    submission = self.state_machine.release_conflict(submission_id, actor_id=principal.id)
                except (InvalidTransition, StaleRead):
                    self.store.delete_assignments([str(a.get("id")) for a in created])
                    raise

        self.assignments.publish_created(created)
        logger.info(
            f"[Conflicts] replacement {ids[0]} assigned (round {current_round(submission)}): "
            f"submission_id={submission_id}"
        )
        return {"submission": submission, "assignment": created[0] if created else None}
