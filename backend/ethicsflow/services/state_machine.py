"""
SubmissionStateMachine：伦理审查稿件状态机。

中文注释:
1. 唯一允许写 submissions.status 的组件；其他 service 只能调用这里的方法推进状态。
2. 每次写入都是 compare-and-set（带上期望的当前状态），输掉竞争时抛 StaleRead。
3. 每次状态变化都写 status_transition_logs（审计），失败降级忽略。
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from ethicsflow.core.errors import (
    ArtifactGenerationFailure,
    InvalidTransition,
    PermissionDenied,
    RevisionIncomplete,
    StaleRead,
    WorkflowError,
)
from ethicsflow.core.role_matrix import Principal, require_action
from ethicsflow.core.submission_locks import SubmissionLockRegistry, submission_locks
from ethicsflow.models.documents import (
    APPROVAL_ARTIFACT_TYPES,
    DOCUMENT_LABELS,
    ORIGINAL_DOCUMENT_TYPES,
    normalize_document_type,
)
from ethicsflow.models.review import ConsensusOutcome
from ethicsflow.models.submission import (
    Classification,
    PRE_REVIEW_STATUSES,
    SubmissionStatus,
    normalize_classification,
    normalize_status,
)
from ethicsflow.services import workflow_events as events
from ethicsflow.services.artifact_service import ApprovalArtifactTrigger
from ethicsflow.services.document_visibility import latest_of_type
from ethicsflow.services.submission_store import SubmissionStore, utc_now_iso

logger = logging.getLogger("ethicsflow.workflow")

REJECTABLE_STATUSES = frozenset(
    {
        SubmissionStatus.NEW_SUBMISSION.value,
        SubmissionStatus.AWAITING_CLASSIFICATION.value,
        SubmissionStatus.NEEDS_REVISION.value,
    }
)


def _latest_verification_by_document(verifications: Iterable[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    latest: dict[str, dict[str, Any]] = {}
    for row in verifications:
        # 按 verified_at 升序返回，后写入的覆盖前面的
        latest[str(row.get("document_id"))] = row
    return latest


def format_revision_comment(flagged_types: Iterable[str], comment: str | None) -> str:
    labels = [DOCUMENT_LABELS.get(t, t) for t in flagged_types]
    parts: list[str] = []
    if labels:
        parts.append("Documents requiring revision: " + ", ".join(labels) + ".")
    text = str(comment or "").strip()
    if text:
        parts.append(text)
    return "\n\n".join(parts) or "Revision requested."


class SubmissionStateMachine:
    def __init__(
        self,
        store: SubmissionStore,
        *,
        artifacts: ApprovalArtifactTrigger,
        bus: events.WorkflowEventBus,
        locks: SubmissionLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.artifacts = artifacts
        self.bus = bus
        self.locks = locks or submission_locks

    # --- 内部：受控状态写入 ---

    def _current_status(self, submission: dict[str, Any]) -> str:
        return normalize_status(submission.get("status")) or SubmissionStatus.NEW_SUBMISSION.value

    def _transition(
        self,
        submission: dict[str, Any],
        to_status: str,
        *,
        actor_id: Optional[str],
        comment: Optional[str] = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        from_status = self._current_status(submission)
        if to_status not in SubmissionStatus.allowed_next(from_status):
            raise InvalidTransition(current=from_status, requested=to_status)

        # CAS 必须带上数据库里的原始字符串（兼容旧状态值）
        expected = str(submission.get("status") or from_status)
        updated = self.store.compare_and_set_status(
            str(submission["id"]), expected=expected, to_status=to_status, extra=extra
        )
        if not updated:
            raise StaleRead(
                "Submission status changed concurrently; reload and retry",
                submission_id=str(submission["id"]),
                expected=from_status,
            )

        self.store.insert_transition_log(
            {
                "submission_id": str(submission["id"]),
                "from_status": from_status,
                "to_status": to_status,
                "changed_by": actor_id,
                "comment": comment,
                "created_at": utc_now_iso(),
            }
        )
        logger.info(f"[Workflow] {submission['id']}: {from_status} -> {to_status} by {actor_id}")
        return updated

    def _approve(self, submission: dict[str, Any], *, actor_id: Optional[str]) -> dict[str, Any]:
        approved = self._transition(submission, SubmissionStatus.APPROVED.value, actor_id=actor_id)
        try:
            self.artifacts.generate_missing(str(submission["id"]))
        except ArtifactGenerationFailure as e:
            # 审批结论是权威的：证书生成失败不回滚，等待 repair
            logger.error(f"[Workflow] approval artifacts pending repair: submission_id={submission['id']} {e.detail}")
        except Exception as e:
            logger.error(
                f"[Workflow] approval artifacts pending repair: submission_id={submission['id']} error={e}",
                exc_info=True,
            )
            self.artifacts.record_error(str(submission["id"]), list(APPROVAL_ARTIFACT_TYPES))
        done = self._transition(approved, SubmissionStatus.REVIEW_COMPLETE.value, actor_id=actor_id)
        self.bus.publish(events.APPROVED, {"submission_id": str(submission["id"]), "actor_id": actor_id})
        return done

    def complete_approval(self, submission_id: str, *, actor_id: Optional[str]) -> Optional[dict[str, Any]]:
        """
        approved -> review_complete（批准流程中途失败后由 repair 补完）；其他状态不做任何事。
        """
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            if self._current_status(submission) != SubmissionStatus.APPROVED.value:
                return None
            done = self._transition(
                submission,
                SubmissionStatus.REVIEW_COMPLETE.value,
                actor_id=actor_id,
                comment="approval completed after artifact repair",
            )
            self.bus.publish(events.APPROVED, {"submission_id": submission_id, "actor_id": actor_id})
            return done

    def _enter_revision(
        self,
        submission: dict[str, Any],
        *,
        actor_id: Optional[str],
        comment: Optional[str],
        flagged_types: list[str],
        source: str,
    ) -> dict[str, Any]:
        submission_id = str(submission["id"])
        from_status = self._current_status(submission)
        now = utc_now_iso()
        text = format_revision_comment(flagged_types, comment)

        updated = self._transition(
            submission,
            SubmissionStatus.NEEDS_REVISION.value,
            actor_id=actor_id,
            comment=text,
            extra={
                "revision_return_status": from_status,
                "revision_flagged_types": flagged_types,
                "revision_comment": text,
                "revision_requested_at": now,
            },
        )

        # 每个被标记类型的最新文件：追加一条“未通过”的核验记录（最新记录生效）
        documents = self.store.list_documents(submission_id)
        rows: list[dict[str, Any]] = []
        for doc_type in flagged_types:
            latest = latest_of_type(documents, doc_type)
            if not latest:
                continue
            rows.append(
                {
                    "submission_id": submission_id,
                    "document_id": latest["id"],
                    "verified_by": actor_id,
                    "is_approved": False,
                    "feedback_comment": comment,
                    "verified_at": now,
                }
            )
        self.store.insert_verifications(rows)

        try:
            self.store.insert_comment(
                {
                    "submission_id": submission_id,
                    "comment_type": "revision_request",
                    "comment_text": text,
                    "created_by": actor_id,
                    "created_at": now,
                }
            )
        except Exception as e:
            logger.warning(f"[Workflow] revision comment insert failed (ignored): {e}")

        self.bus.publish(
            events.REVISION_REQUESTED,
            {
                "submission_id": submission_id,
                "flagged_document_types": flagged_types,
                "comment": text,
                "source": source,
            },
        )
        return updated

    # --- 公共操作 ---

    def classify(self, principal: Principal, submission_id: str, classification: str) -> dict[str, Any]:
        """
        awaiting_classification -> classified；Exempted 直接进入批准流程（不分配审稿人）。
        """
        require_action(principal, "submission:classify")
        value = normalize_classification(classification)
        if value is None:
            raise WorkflowError(f"Unknown classification: {classification}")

        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            if current != SubmissionStatus.AWAITING_CLASSIFICATION.value:
                raise InvalidTransition(current=current, requested=SubmissionStatus.CLASSIFIED.value)

            classified = self._transition(
                submission,
                SubmissionStatus.CLASSIFIED.value,
                actor_id=principal.id,
                comment=f"classified as {value}",
                extra={
                    "classification_type": value,
                    "classified_by": principal.id,
                    "classified_at": utc_now_iso(),
                },
            )
            if value == Classification.EXEMPTED.value:
                return self._approve(classified, actor_id=principal.id)
            return classified

    def advance_on_assignment(
        self,
        submission_id: str,
        *,
        actor_id: Optional[str],
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            if current != SubmissionStatus.CLASSIFIED.value:
                raise InvalidTransition(current=current, requested=SubmissionStatus.UNDER_REVIEW.value)
            return self._transition(
                submission,
                SubmissionStatus.UNDER_REVIEW.value,
                actor_id=actor_id,
                comment="reviewers assigned",
                extra=extra,
            )

    def advance_on_consensus(
        self,
        submission_id: str,
        outcome: ConsensusOutcome,
        *,
        actor_id: Optional[str],
        flagged_types: list[str] | None = None,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            requested = (
                SubmissionStatus.NEEDS_REVISION.value
                if outcome == ConsensusOutcome.NEEDS_REVISION
                else SubmissionStatus.APPROVED.value
            )
            if current != SubmissionStatus.UNDER_REVIEW.value:
                raise InvalidTransition(current=current, requested=requested)

            if outcome == ConsensusOutcome.NEEDS_REVISION:
                return self._enter_revision(
                    submission,
                    actor_id=actor_id,
                    comment=comment,
                    flagged_types=list(flagged_types or []),
                    source="consensus",
                )
            return self._approve(submission, actor_id=actor_id)

    def hold_for_conflict(self, submission_id: str, *, actor_id: Optional[str], comment: Optional[str] = None) -> dict[str, Any]:
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            if current == SubmissionStatus.CONFLICT_OF_INTEREST.value:
                return submission
            return self._transition(
                submission,
                SubmissionStatus.CONFLICT_OF_INTEREST.value,
                actor_id=actor_id,
                comment=comment or "reviewer removed for conflict of interest",
            )

    def release_conflict(self, submission_id: str, *, actor_id: Optional[str]) -> dict[str, Any]:
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            return self._transition(
                submission,
                SubmissionStatus.UNDER_REVIEW.value,
                actor_id=actor_id,
                comment="replacement reviewer assigned",
            )

    def request_revision(
        self,
        principal: Principal,
        submission_id: str,
        comment: Optional[str],
        flagged_document_types: Iterable[str],
    ) -> dict[str, Any]:
        """
        预审阶段由工作人员退回修改（评审后的退回由共识结果触发）。
        """
        require_action(principal, "submission:request_revision")
        flagged: list[str] = []
        for raw in flagged_document_types or []:
            doc_type = normalize_document_type(raw)
            if doc_type is None:
                raise WorkflowError(f"Unknown document type: {raw}")
            if doc_type not in flagged:
                flagged.append(doc_type)

        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            if current not in PRE_REVIEW_STATUSES:
                raise InvalidTransition(current=current, requested=SubmissionStatus.NEEDS_REVISION.value)
            return self._enter_revision(
                submission,
                actor_id=principal.id,
                comment=comment,
                flagged_types=flagged,
                source="staff",
            )

    def outstanding_revision_types(self, submission: dict[str, Any]) -> list[str]:
        """
        被标记但仍未重新上传的文件类型：该类型最新文件的最新核验仍为“未通过”，或根本没有文件。
        """
        submission_id = str(submission["id"])
        flagged = [str(t) for t in (submission.get("revision_flagged_types") or [])]
        if not flagged:
            return []
        documents = self.store.list_documents(submission_id, document_types=flagged)
        latest_verifications = _latest_verification_by_document(self.store.list_verifications(submission_id))

        outstanding: list[str] = []
        for doc_type in flagged:
            latest = latest_of_type(documents, doc_type)
            if not latest:
                outstanding.append(doc_type)
                continue
            verification = latest_verifications.get(str(latest.get("id")))
            if verification is not None and not verification.get("is_approved"):
                outstanding.append(doc_type)
        return outstanding

    def resubmit(self, principal: Principal, submission_id: str) -> dict[str, Any]:
        """
        needs_revision -> 修订前的状态。

        中文注释:
        - 回到评审（under_review）时开启新一轮 review_round；上一轮审稿人不会被自动要求重审。
        """
        require_action(principal, "submission:resubmit")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            if str(submission.get("user_id") or "") != principal.id:
                raise PermissionDenied("Only the submitting researcher may resubmit")

            current = self._current_status(submission)
            target = normalize_status(submission.get("revision_return_status")) or (
                SubmissionStatus.AWAITING_CLASSIFICATION.value
            )
            if current != SubmissionStatus.NEEDS_REVISION.value:
                raise InvalidTransition(current=current, requested=target)

            outstanding = self.outstanding_revision_types(submission)
            if outstanding:
                raise RevisionIncomplete(
                    "Flagged documents must be re-uploaded before resubmitting",
                    document_types=outstanding,
                )

            extra: dict[str, Any] = {
                "revision_return_status": None,
                "revision_flagged_types": [],
                "submitted_at": utc_now_iso(),
            }
            if target == SubmissionStatus.UNDER_REVIEW.value:
                extra["review_round"] = int(submission.get("review_round") or 1) + 1
            return self._transition(
                submission,
                target,
                actor_id=principal.id,
                comment="resubmitted after revision",
                extra=extra,
            )

    def verify_documents(
        self,
        principal: Principal,
        submission_id: str,
        verifications: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """
        预审核验：全部通过 -> awaiting_classification；任一未通过 -> needs_revision（标记对应类型）。
        """
        require_action(principal, "submission:verify")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            if current != SubmissionStatus.NEW_SUBMISSION.value:
                raise InvalidTransition(current=current, requested=SubmissionStatus.AWAITING_CLASSIFICATION.value)

            documents = self.store.list_documents(submission_id, document_types=ORIGINAL_DOCUMENT_TYPES)
            by_id = {str(d.get("id")): d for d in documents}
            now = utc_now_iso()
            rows: list[dict[str, Any]] = []
            for item in verifications:
                doc_id = str(item.get("document_id") or "")
                if doc_id not in by_id:
                    raise WorkflowError(f"Document {doc_id} does not belong to this submission")
                rows.append(
                    {
                        "submission_id": submission_id,
                        "document_id": doc_id,
                        "verified_by": principal.id,
                        "is_approved": bool(item.get("is_approved")),
                        "feedback_comment": item.get("feedback_comment"),
                        "verified_at": now,
                    }
                )
            self.store.insert_verifications(rows)

            latest_verifications = _latest_verification_by_document(self.store.list_verifications(submission_id))
            current_docs = [d for d in (latest_of_type(documents, t) for t in ORIGINAL_DOCUMENT_TYPES) if d]

            rejected: list[dict[str, Any]] = []
            pending = False
            for doc in current_docs:
                verification = latest_verifications.get(str(doc.get("id")))
                if verification is None:
                    pending = True
                elif not verification.get("is_approved"):
                    rejected.append({"doc": doc, "verification": verification})

            if rejected:
                feedback = "\n".join(
                    f"- {DOCUMENT_LABELS.get(r['doc']['document_type'], r['doc']['document_type'])}: "
                    f"{r['verification'].get('feedback_comment')}"
                    for r in rejected
                    if r["verification"].get("feedback_comment")
                )
                return self._enter_revision(
                    submission,
                    actor_id=principal.id,
                    comment=feedback or None,
                    flagged_types=[str(r["doc"]["document_type"]) for r in rejected],
                    source="verification",
                )
            if current_docs and not pending:
                return self._transition(
                    submission,
                    SubmissionStatus.AWAITING_CLASSIFICATION.value,
                    actor_id=principal.id,
                    comment="documents verified",
                )
            return submission

    def reject(self, principal: Principal, submission_id: str, reason: Optional[str] = None) -> dict[str, Any]:
        require_action(principal, "submission:reject")
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            current = self._current_status(submission)
            if current not in REJECTABLE_STATUSES:
                raise InvalidTransition(current=current, requested=SubmissionStatus.REJECTED.value)
            return self._transition(
                submission,
                SubmissionStatus.REJECTED.value,
                actor_id=principal.id,
                comment=reason,
            )
