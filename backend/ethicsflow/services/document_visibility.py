from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import PermissionDenied
from ethicsflow.core.role_matrix import REVIEWER_ROLE, RESEARCHER_ROLE, STAFF_ROLE, Principal
from ethicsflow.models.documents import (
    APPROVAL_ARTIFACT_TYPES,
    DocumentType,
    ORIGINAL_DOCUMENT_TYPES,
)
from ethicsflow.models.submission import PRE_REVIEW_STATUSES, SubmissionStatus, normalize_status
from ethicsflow.services.storage_service import create_signed_url
from ethicsflow.services.submission_store import SubmissionStore

logger = logging.getLogger("ethicsflow.documents")


def _order_key(doc: Mapping[str, Any]) -> tuple[int, str]:
    # revision_count 单调递增；同一类型内它比 uploaded_at 更可靠
    try:
        rc = int(doc.get("revision_count") or 0)
    except (TypeError, ValueError):
        rc = 0
    return rc, str(doc.get("uploaded_at") or "")


def latest_of_type(documents: Iterable[Mapping[str, Any]], document_type: str) -> Optional[dict[str, Any]]:
    candidates = [dict(d) for d in documents if str(d.get("document_type") or "") == document_type]
    if not candidates:
        return None
    return max(candidates, key=_order_key)


def _shows_originals(submission: Mapping[str, Any]) -> bool:
    status = normalize_status(submission.get("status")) or SubmissionStatus.NEW_SUBMISSION.value
    if status in PRE_REVIEW_STATUSES or status == SubmissionStatus.REJECTED.value:
        return True
    if status == SubmissionStatus.NEEDS_REVISION.value:
        # 预审阶段退回：研究者需要看到原始文件；评审后退回：沿用合并版视图
        return (submission.get("revision_return_status") or "") in PRE_REVIEW_STATUSES
    return False


def visible_documents(
    submission: Mapping[str, Any],
    documents: Iterable[Mapping[str, Any]],
    viewer_role: str,
) -> list[dict[str, Any]]:
    """
    根据稿件状态与查看者角色，返回当前可见的文档（纯函数，每次读取时重新计算）。

    中文注释:
    - 预审阶段（new_submission / awaiting_classification）：六类原始文件，每类取最新版本。
    - 进入分类之后：只显示最新的 consolidated_application；审稿人只看匿名的 consolidated_review，
      没有时也不回退到 consolidated_application。
    - review_complete：额外附上已生成的批准文件（证书 / Form 0011 / Form 0012）。
    """
    docs = [dict(d) for d in documents]
    status = normalize_status(submission.get("status")) or SubmissionStatus.NEW_SUBMISSION.value
    role = str(viewer_role or "").strip().lower()

    out: list[dict[str, Any]] = []
    if _shows_originals(submission):
        for doc_type in ORIGINAL_DOCUMENT_TYPES:
            latest = latest_of_type(docs, doc_type)
            if latest:
                out.append(latest)
    else:
        wanted = (
            DocumentType.CONSOLIDATED_REVIEW.value
            if role == REVIEWER_ROLE
            else DocumentType.CONSOLIDATED_APPLICATION.value
        )
        latest = latest_of_type(docs, wanted)
        if latest:
            out.append(latest)

    if status == SubmissionStatus.REVIEW_COMPLETE.value:
        for kind in APPROVAL_ARTIFACT_TYPES:
            latest = latest_of_type(docs, kind)
            if latest:
                out.append(latest)
    return out


class DocumentAccessService:
    """
    给可见文档签发限时下载链接；从不返回永久公开 URL。
    """

    def __init__(self, store: SubmissionStore, policy: ReviewPolicyConfig, *, client: Any = None) -> None:
        self.store = store
        self.policy = policy
        self.client = client

    def viewer_role_for(self, principal: Principal, submission: Mapping[str, Any]) -> str:
        if str(submission.get("user_id") or "") == principal.id:
            return RESEARCHER_ROLE
        if principal.can("submission:view_all"):
            return STAFF_ROLE
        if principal.has_role(REVIEWER_ROLE):
            assignments = self.store.list_assignments(str(submission["id"]))
            if any(str(a.get("reviewer_id")) == principal.id for a in assignments):
                return REVIEWER_ROLE
        raise PermissionDenied("You do not have access to this submission's documents")

    def list_visible(self, principal: Principal, submission_id: str) -> list[dict[str, Any]]:
        submission = self.store.get_submission(submission_id)
        role = self.viewer_role_for(principal, submission)
        documents = self.store.list_documents(submission_id)

        out: list[dict[str, Any]] = []
        for doc in visible_documents(submission, documents, role):
            path = str(doc.get("file_url") or "")
            signed_url: str | None = None
            if path:
                try:
                    signed_url = create_signed_url(
                        bucket=self.policy.documents_bucket,
                        path=path,
                        expires_in=self.policy.signed_url_ttl_seconds,
                        client=self.client,
                    ).url
                except Exception as e:
                    logger.warning(f"[Documents] sign url failed: document_id={doc.get('id')} error={e}")
            out.append(
                {
                    "id": doc.get("id"),
                    "document_type": doc.get("document_type"),
                    "file_name": doc.get("file_name"),
                    "revision_count": doc.get("revision_count") or 0,
                    "uploaded_at": doc.get("uploaded_at"),
                    "signed_url": signed_url,
                    "expires_in": self.policy.signed_url_ttl_seconds if signed_url else None,
                }
            )
        return out
