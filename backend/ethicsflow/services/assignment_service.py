from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import (
    AlreadyAssigned,
    Conflicted,
    InvalidTransition,
    NotEligible,
    QuotaExceeded,
    StaleRead,
)
from ethicsflow.core.role_matrix import REVIEWER_ROLE, Principal, normalize_roles, require_action
from ethicsflow.core.submission_locks import SubmissionLockRegistry, submission_locks
from ethicsflow.models.conflict import is_conflicted
from ethicsflow.models.review import AssignmentStatus
from ethicsflow.models.submission import SubmissionStatus, normalize_status
from ethicsflow.services import workflow_events as events
from ethicsflow.services.state_machine import SubmissionStateMachine
from ethicsflow.services.submission_store import SubmissionStore

logger = logging.getLogger("ethicsflow.assignments")


def current_round(submission: dict[str, Any]) -> int:
    try:
        return max(1, int(submission.get("review_round") or 1))
    except (TypeError, ValueError):
        return 1


def conflicted_reviewer_ids(forms: Iterable[dict[str, Any]]) -> set[str]:
    return {str(f.get("reviewer_id")) for f in forms if is_conflicted(f)}


def required_reviewers(submission: dict[str, Any], policy: ReviewPolicyConfig) -> int:
    """
    本轮需要的审稿人数：分配时写入 submissions.required_reviewers，且不超过当前配额。
    """
    quota = policy.quota_for(submission.get("classification_type"))
    raw: Optional[Any] = submission.get("required_reviewers")
    try:
        required = int(raw) if raw is not None else quota
    except (TypeError, ValueError):
        required = quota
    return min(required, quota) if quota else required


class ReviewerAssignmentManager:
    """
    审稿人分配：配额校验 + 冲突 / 重复排除 + 全有或全无的批量创建。

    中文注释:
    - 校验顺序固定：状态 -> 配额 -> 已分配 -> 利益冲突 -> 资格；任何一项失败都不写入任何行。
    - 同一稿件的分配、冲突声明、审稿提交共用一把 per-submission 锁。
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

    def _due_date(self, now: datetime) -> str:
        return (now + timedelta(days=self.policy.review_window_days)).isoformat()

    def active_assignments(self, submission: dict[str, Any]) -> list[dict[str, Any]]:
        return self.store.list_assignments(str(submission["id"]), review_round=current_round(submission))

    def candidate_pool(self, submission: dict[str, Any]) -> list[dict[str, Any]]:
        """
        可分配的审稿人：具备 reviewer 角色、非研究者本人、当前轮次未分配、未声明利益冲突。
        """
        active_ids = {str(a.get("reviewer_id")) for a in self.active_assignments(submission)}
        conflicted = conflicted_reviewer_ids(self.store.list_conflict_forms(str(submission["id"])))
        owner_id = str(submission.get("user_id") or "")

        out: list[dict[str, Any]] = []
        for profile in self.store.list_reviewer_profiles():
            pid = str(profile.get("id") or "")
            if not pid or pid == owner_id or pid in active_ids or pid in conflicted:
                continue
            if REVIEWER_ROLE not in normalize_roles(profile.get("roles")):
                continue
            out.append(profile)
        out.sort(key=lambda p: (str(p.get("full_name") or "").lower(), str(p.get("email") or "").lower()))
        return out

    def eligible_reviewers(self, principal: Principal, submission_id: str) -> list[dict[str, Any]]:
        require_action(principal, "reviewer:assign")
        submission = self.store.get_submission(submission_id)
        return self.candidate_pool(submission)

    def validate_candidates(
        self,
        submission: dict[str, Any],
        reviewer_ids: list[str],
        *,
        capacity: int,
    ) -> list[str]:
        ids = [str(r).strip() for r in reviewer_ids if str(r or "").strip()]
        if not ids or len(ids) > capacity:
            raise QuotaExceeded(
                f"Between 1 and {capacity} reviewer(s) may be assigned",
                requested=len(ids),
                capacity=capacity,
            )

        active_ids = {str(a.get("reviewer_id")) for a in self.active_assignments(submission)}
        duplicates = sorted({r for r in ids if ids.count(r) > 1} | (set(ids) & active_ids))
        if duplicates:
            raise AlreadyAssigned("Reviewer already assigned to this submission", reviewer_ids=duplicates)

        conflicted = sorted(set(ids) & conflicted_reviewer_ids(self.store.list_conflict_forms(str(submission["id"]))))
        if conflicted:
            raise Conflicted("Reviewer declared a conflict of interest", reviewer_ids=conflicted)

        reviewer_profiles = {str(p.get("id")): p for p in self.store.list_reviewer_profiles()}
        owner_id = str(submission.get("user_id") or "")
        ineligible = sorted(
            r
            for r in ids
            if r == owner_id
            or r not in reviewer_profiles
            or REVIEWER_ROLE not in normalize_roles(reviewer_profiles[r].get("roles"))
        )
        if ineligible:
            raise NotEligible("Not an eligible reviewer for this submission", reviewer_ids=ineligible)
        return ids

    def create_assignments(self, submission: dict[str, Any], reviewer_ids: list[str]) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        rows = [
            {
                "submission_id": str(submission["id"]),
                "reviewer_id": reviewer_id,
                "review_round": current_round(submission),
                "status": AssignmentStatus.PENDING.value,
                "assigned_at": now.isoformat(),
                "due_date": self._due_date(now),
                "completed_at": None,
            }
            for reviewer_id in reviewer_ids
        ]
        return self.store.insert_assignments(rows)

    def publish_created(self, assignments: list[dict[str, Any]]) -> None:
        for row in assignments:
            self.bus.publish(
                events.ASSIGNMENT_CREATED,
                {
                    "submission_id": str(row.get("submission_id")),
                    "reviewer_id": str(row.get("reviewer_id")),
                    "assignment_id": str(row.get("id")),
                    "due_date": row.get("due_date"),
                },
            )

    def assign(self, principal: Principal, submission_id: str, reviewer_ids: list[str]) -> dict[str, Any]:
        require_action(principal, "reviewer:assign")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            status = normalize_status(submission.get("status"))
            if status != SubmissionStatus.CLASSIFIED.value:
                raise InvalidTransition(current=status, requested=SubmissionStatus.UNDER_REVIEW.value)

            quota = self.policy.quota_for(submission.get("classification_type"))
            ids = self.validate_candidates(submission, reviewer_ids, capacity=quota)

            created = self.create_assignments(submission, ids)
            try:
                updated = self.state_machine.advance_on_assignment(
                    submission_id,
                    actor_id=principal.id,
                    extra={"required_reviewers": len(ids)},
                )
            except (InvalidTransition, StaleRead):
                # 状态推进失败：撤销本次插入，保证全有或全无
                self.store.delete_assignments([str(a.get("id")) for a in created])
                raise

        logger.info(f"[Assignments] {len(created)} reviewer(s) assigned: submission_id={submission_id}")
        self.publish_created(created)
        return {"submission": updated, "assignments": created}

    def assign_revision_round(
        self,
        principal: Principal,
        submission_id: str,
        reviewer_ids: list[str],
    ) -> dict[str, Any]:
        """
        修订重审：稿件回到 under_review 后，由工作人员显式为新一轮选择审稿人（可以是上一轮的人）。
        """
        require_action(principal, "reviewer:assign")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            status = normalize_status(submission.get("status"))
            if status != SubmissionStatus.UNDER_REVIEW.value:
                raise InvalidTransition(current=status, requested=SubmissionStatus.UNDER_REVIEW.value)

            required = self.required_reviewers(submission)
            capacity = required - len(self.active_assignments(submission))
            if capacity <= 0:
                raise QuotaExceeded(
                    "All reviewer slots for this round are filled",
                    requested=len(reviewer_ids or []),
                    capacity=0,
                )
            ids = self.validate_candidates(submission, reviewer_ids, capacity=capacity)
            created = self.create_assignments(submission, ids)

        logger.info(
            f"[Assignments] round {current_round(submission)}: {len(created)} reviewer(s) assigned: "
            f"submission_id={submission_id}"
        )
        self.publish_created(created)
        return {"submission": submission, "assignments": created}

    def required_reviewers(self, submission: dict[str, Any]) -> int:
        return required_reviewers(submission, self.policy)
