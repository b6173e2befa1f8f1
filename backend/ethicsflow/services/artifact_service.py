from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import ArtifactGenerationFailure, InvalidTransition
from ethicsflow.core.role_matrix import Principal, require_action
from ethicsflow.core.submission_locks import SubmissionLockRegistry, submission_locks
from ethicsflow.models.documents import APPROVAL_ARTIFACT_FILE_NAMES, APPROVAL_ARTIFACT_TYPES
from ethicsflow.models.review import ReviewStatus
from ethicsflow.models.submission import SubmissionStatus, normalize_status
from ethicsflow.services.document_generator import DocumentGenerator
from ethicsflow.services.storage_service import upload_bytes
from ethicsflow.services.submission_store import SubmissionStore, utc_now_iso

logger = logging.getLogger("ethicsflow.artifacts")

APPROVED_STATUSES = frozenset({SubmissionStatus.APPROVED.value, SubmissionStatus.REVIEW_COMPLETE.value})


def artifact_path(submission_id: str, kind: str) -> str:
    return f"{submission_id}/approval/{kind}.pdf"


class ApprovalArtifactTrigger:
    """
    批准后生成证书 / Form 0011 / Form 0012，并登记到 uploaded_documents。

    中文注释:
    1. 幂等：每次只生成“缺失”的类型；插入前再确认一次，避免重复证书。
    2. 固定存储路径 + upsert，上一次上传成功但登记失败时，重试会覆盖同一对象。
    3. 失败不回滚审批结果，只记录 artifact_error，由 repair 显式重试。
    """

    def __init__(
        self,
        store: SubmissionStore,
        generator: DocumentGenerator,
        policy: ReviewPolicyConfig,
        *,
        storage_client: Any = None,
        locks: SubmissionLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.policy = policy
        self.storage_client = storage_client
        self.locks = locks or submission_locks
        # 由 build_workflow 绑定到 SubmissionStateMachine.complete_approval
        self.complete_approval: Optional[Callable[..., Optional[dict[str, Any]]]] = None

    def missing_kinds(self, submission_id: str) -> list[str]:
        existing = {
            str(d.get("document_type"))
            for d in self.store.list_documents(submission_id, document_types=APPROVAL_ARTIFACT_TYPES)
        }
        return [kind for kind in APPROVAL_ARTIFACT_TYPES if kind not in existing]

    def _review_snapshots(self, submission: dict[str, Any]) -> list[dict[str, Any]]:
        round_no = int(submission.get("review_round") or 1)
        active_ids = {
            str(a.get("id")) for a in self.store.list_assignments(str(submission["id"]), review_round=round_no)
        }
        return [
            r
            for r in self.store.list_reviews(
                str(submission["id"]), review_round=round_no, status=ReviewStatus.SUBMITTED.value
            )
            if str(r.get("assignment_id")) in active_ids
        ]

    def _generate_one(self, submission: dict[str, Any], kind: str, reviews: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
        submission_id = str(submission["id"])
        content = self.generator.generate(kind, submission, reviews)
        if not content:
            raise RuntimeError(f"generator returned no bytes for {kind}")

        path = artifact_path(submission_id, kind)
        upload_bytes(
            bucket=self.policy.documents_bucket,
            path=path,
            content=content,
            content_type="application/pdf",
            upsert=True,
            client=self.storage_client,
        )

        # 上传后再确认一次：并发的 repair 可能已经登记过同类型
        if kind not in self.missing_kinds(submission_id):
            return None

        return self.store.insert_document(
            {
                "submission_id": submission_id,
                "document_type": kind,
                "file_name": APPROVAL_ARTIFACT_FILE_NAMES[kind],
                "file_url": path,
                "file_size": len(content),
                "uploaded_at": utc_now_iso(),
                "revision_count": 0,
            }
        )

    def generate_missing(self, submission_id: str) -> list[dict[str, Any]]:
        with self.locks.hold(submission_id):
            submission = self.store.get_submission(submission_id)
            status = normalize_status(submission.get("status"))
            if status not in APPROVED_STATUSES:
                raise InvalidTransition(
                    current=status,
                    requested=SubmissionStatus.REVIEW_COMPLETE.value,
                    detail="Approval artifacts can only be generated for approved submissions",
                )

            missing = self.missing_kinds(submission_id)
            if not missing:
                self._clear_error(submission)
                return []

            reviews = self._review_snapshots(submission)
            created: list[dict[str, Any]] = []
            failed: list[str] = []
            for kind in missing:
                try:
                    row = self._generate_one(submission, kind, reviews)
                except Exception as e:
                    logger.error(
                        f"[Artifacts] generation failed: submission_id={submission_id} kind={kind} error={e}",
                        exc_info=True,
                    )
                    failed.append(kind)
                    continue
                if row:
                    created.append(row)

            if failed:
                self.record_error(submission_id, failed)
                raise ArtifactGenerationFailure(
                    f"Failed to generate approval artifacts: {', '.join(failed)}",
                    failed_kinds=failed,
                )

            self._clear_error(submission)
            logger.info(f"[Artifacts] generated {len(created)} artifact(s) for submission_id={submission_id}")
            return created

    def record_error(self, submission_id: str, failed: list[str]) -> None:
        try:
            self.store.update_submission_fields(
                submission_id,
                {"artifact_error": f"missing: {', '.join(failed)}", "artifact_error_at": utc_now_iso()},
            )
        except Exception as e:
            logger.error(f"[Artifacts] record error failed: submission_id={submission_id} error={e}")

    def _clear_error(self, submission: dict[str, Any]) -> None:
        if not submission.get("artifact_error"):
            return
        self.store.update_submission_fields(
            str(submission["id"]), {"artifact_error": None, "artifact_error_at": None}
        )

    def _finish_approval(self, submission_id: str, *, actor_id: Optional[str]) -> bool:
        # 卡在 approved 的稿件：由状态机补完 approved -> review_complete
        if self.complete_approval is None:
            return False
        return self.complete_approval(submission_id, actor_id=actor_id) is not None

    def repair(self, principal: Principal, submission_id: str) -> list[dict[str, Any]]:
        require_action(principal, "artifact:repair")
        try:
            created = self.generate_missing(submission_id)
        except ArtifactGenerationFailure:
            self._finish_approval(submission_id, actor_id=principal.id)
            raise
        self._finish_approval(submission_id, actor_id=principal.id)
        return created

    def repair_all(self) -> dict[str, Any]:
        """
        Cron：为所有已批准稿件补齐缺失的批准文件，并补完停在 approved 的状态。
        """
        processed = 0
        repaired: list[str] = []
        failed: list[str] = []
        for submission in self.store.list_submissions_by_status(sorted(APPROVED_STATUSES)):
            submission_id = str(submission.get("id"))
            processed += 1
            try:
                created = self.generate_missing(submission_id)
            except ArtifactGenerationFailure:
                failed.append(submission_id)
                self._finish_approval(submission_id, actor_id=None)
                continue
            if self._finish_approval(submission_id, actor_id=None) or created:
                repaired.append(submission_id)
        return {"processed": processed, "repaired": repaired, "failed": failed}
