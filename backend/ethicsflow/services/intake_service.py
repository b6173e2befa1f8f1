from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import NotEligible, PermissionDenied, WorkflowError
from ethicsflow.core.role_matrix import REVIEWER_ROLE, Principal, require_action
from ethicsflow.models.documents import (
    APPROVAL_ARTIFACT_TYPES,
    CONSOLIDATED_DOCUMENT_TYPES,
    normalize_document_type,
)
from ethicsflow.models.submission import TERMINAL_STATUSES, SubmissionStatus, normalize_status
from ethicsflow.services.storage_service import upload_bytes
from ethicsflow.services.submission_store import SubmissionStore, utc_now_iso

logger = logging.getLogger("ethicsflow.intake")

RESEARCHER_UPLOAD_STATUSES = frozenset(
    {SubmissionStatus.NEW_SUBMISSION.value, SubmissionStatus.NEEDS_REVISION.value}
)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def generate_tracking_code(now: datetime | None = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    return f"ERC-{year}-{secrets.token_hex(4).upper()}"


def safe_file_name(name: str) -> str:
    cleaned = _SAFE_NAME.sub("_", str(name or "").strip()).strip("._")
    return cleaned[:120] or "document"


class IntakeService:
    """
    研究者提交入口：创建稿件、上传文件、查看稿件详情。
    """

    def __init__(self, store: SubmissionStore, policy: ReviewPolicyConfig, *, storage_client: Any = None) -> None:
        self.store = store
        self.policy = policy
        self.storage_client = storage_client

    def create_submission(
        self,
        principal: Principal,
        *,
        title: str,
        college: Optional[str] = None,
        organization: Optional[str] = None,
    ) -> dict[str, Any]:
        require_action(principal, "submission:create")
        clean_title = str(title or "").strip()
        if not clean_title:
            raise WorkflowError("Title is required")

        now = utc_now_iso()
        row = self.store.insert_submission(
            {
                "tracking_code": generate_tracking_code(),
                "title": clean_title,
                "user_id": principal.id,
                "college": (college or "").strip() or None,
                "organization": (organization or "").strip() or None,
                "status": SubmissionStatus.NEW_SUBMISSION.value,
                "classification_type": None,
                "review_round": 1,
                "required_reviewers": None,
                "submitted_at": now,
                "updated_at": now,
            }
        )
        self.store.insert_transition_log(
            {
                "submission_id": str(row["id"]),
                "from_status": None,
                "to_status": SubmissionStatus.NEW_SUBMISSION.value,
                "changed_by": principal.id,
                "comment": "submission created",
                "created_at": now,
            }
        )
        logger.info(f"[Intake] submission created: id={row['id']} tracking_code={row['tracking_code']}")
        return row

    def get_submission(self, principal: Principal, submission_id: str) -> dict[str, Any]:
        submission = self.store.get_submission(submission_id)
        if str(submission.get("user_id") or "") == principal.id or principal.can("submission:view_all"):
            return submission
        if principal.has_role(REVIEWER_ROLE):
            assignments = self.store.list_assignments(submission_id)
            if any(str(a.get("reviewer_id")) == principal.id for a in assignments):
                return submission
        raise PermissionDenied("You do not have access to this submission")

    def _check_upload_allowed(self, principal: Principal, submission: dict[str, Any], document_type: str) -> None:
        status = normalize_status(submission.get("status")) or SubmissionStatus.NEW_SUBMISSION.value
        if document_type in APPROVAL_ARTIFACT_TYPES:
            raise PermissionDenied("Approval documents are generated by the system")

        if document_type in CONSOLIDATED_DOCUMENT_TYPES:
            require_action(principal, "submission:upload_consolidated")
            if status in TERMINAL_STATUSES:
                raise NotEligible(f"Uploads are closed while submission is {status}", status=status)
            return

        require_action(principal, "submission:upload")
        if str(submission.get("user_id") or "") != principal.id:
            raise PermissionDenied("Only the submitting researcher may upload original documents")
        if status not in RESEARCHER_UPLOAD_STATUSES:
            raise NotEligible(f"Uploads are closed while submission is {status}", status=status)

    def upload_document(
        self,
        principal: Principal,
        submission_id: str,
        *,
        document_type: str,
        file_name: str,
        content: bytes,
        content_type: str = "application/pdf",
    ) -> dict[str, Any]:
        doc_type = normalize_document_type(document_type)
        if doc_type is None:
            raise WorkflowError(f"Unknown document type: {document_type}")
        if not content:
            raise WorkflowError("Uploaded file is empty")

        submission = self.store.get_submission(submission_id)
        self._check_upload_allowed(principal, submission, doc_type)

        previous = self.store.list_documents(submission_id, document_types=[doc_type])
        name = safe_file_name(file_name)
        path = f"{submission_id}/{doc_type}/{uuid4().hex}-{name}"
        upload_bytes(
            bucket=self.policy.documents_bucket,
            path=path,
            content=content,
            content_type=content_type or "application/octet-stream",
            upsert=False,
            client=self.storage_client,
        )
        row = self.store.insert_document(
            {
                "submission_id": str(submission_id),
                "document_type": doc_type,
                "file_name": file_name or name,
                "file_url": path,
                "file_size": len(content),
                "uploaded_at": utc_now_iso(),
                "revision_count": len(previous),
            }
        )
        logger.info(
            f"[Intake] document uploaded: submission_id={submission_id} type={doc_type} revision={len(previous)}"
        )
        return row
