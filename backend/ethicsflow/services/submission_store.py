"""
SubmissionRecord store：submissions 及其附属表的读写。

中文注释:
1. 这里只做数据访问，不做业务判断；所有校验在上层 service 完成。
2. 统一使用 service_role client（supabase_admin），以兼容云端 RLS 环境；测试注入内存版 client。
3. status 只能通过 compare_and_set_status 写入，并且只允许 SubmissionStateMachine 调用。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from ethicsflow.core.errors import NotFound
from ethicsflow.lib.api_client import supabase_admin

logger = logging.getLogger("ethicsflow.store")


def _rows(resp: Any) -> list[dict[str, Any]]:
    return list(getattr(resp, "data", None) or [])


def _first(resp: Any) -> Optional[dict[str, Any]]:
    rows = _rows(resp)
    return rows[0] if rows else None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SubmissionStore:
    def __init__(self, client: Any = None) -> None:
        self.client = client or supabase_admin

    # --- submissions ---

    def find_submission(self, submission_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("submissions")
            .select("*")
            .eq("id", str(submission_id))
            .limit(1)
            .execute()
        )
        return _first(resp)

    def get_submission(self, submission_id: str) -> dict[str, Any]:
        row = self.find_submission(submission_id)
        if not row:
            raise NotFound("Submission not found", submission_id=str(submission_id))
        return row

    def insert_submission(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self.client.table("submissions").insert(payload).execute()
        row = _first(resp)
        if not row:
            raise RuntimeError("Failed to create submission")
        return row

    def list_submissions_by_status(self, statuses: Iterable[str]) -> list[dict[str, Any]]:
        resp = (
            self.client.table("submissions")
            .select("*")
            .in_("status", list(statuses))
            .order("updated_at", desc=False)
            .execute()
        )
        return _rows(resp)

    def compare_and_set_status(
        self,
        submission_id: str,
        *,
        expected: str,
        to_status: str,
        extra: dict[str, Any] | None = None,
    ) -> Optional[dict[str, Any]]:
        """
        条件更新：仅当当前 status == expected 时写入。

        返回 None 表示本次调用输掉了竞争（其他请求已经推进了状态）。
        """
        payload: dict[str, Any] = {"status": to_status, "updated_at": utc_now_iso()}
        if extra:
            payload.update(extra)
        resp = (
            self.client.table("submissions")
            .update(payload)
            .eq("id", str(submission_id))
            .eq("status", expected)
            .execute()
        )
        return _first(resp)

    def update_submission_fields(self, submission_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if "status" in fields:
            raise ValueError("status must be written through compare_and_set_status")
        payload = dict(fields)
        payload["updated_at"] = utc_now_iso()
        resp = (
            self.client.table("submissions")
            .update(payload)
            .eq("id", str(submission_id))
            .execute()
        )
        row = _first(resp)
        if not row:
            raise NotFound("Submission not found", submission_id=str(submission_id))
        return row

    # --- uploaded_documents ---

    def list_documents(
        self,
        submission_id: str,
        *,
        document_types: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        q = self.client.table("uploaded_documents").select("*").eq("submission_id", str(submission_id))
        if document_types is not None:
            q = q.in_("document_type", list(document_types))
        resp = q.order("uploaded_at", desc=False).execute()
        return _rows(resp)

    def get_document(self, document_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("uploaded_documents")
            .select("*")
            .eq("id", str(document_id))
            .limit(1)
            .execute()
        )
        return _first(resp)

    def insert_document(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self.client.table("uploaded_documents").insert(payload).execute()
        row = _first(resp)
        if not row:
            raise RuntimeError("Failed to register uploaded document")
        return row

    # --- document_verifications ---

    def list_verifications(self, submission_id: str) -> list[dict[str, Any]]:
        resp = (
            self.client.table("document_verifications")
            .select("*")
            .eq("submission_id", str(submission_id))
            .order("verified_at", desc=False)
            .execute()
        )
        return _rows(resp)

    def insert_verifications(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        resp = self.client.table("document_verifications").insert(rows).execute()
        return _rows(resp)

    # --- reviewer_assignments ---

    def list_assignments(self, submission_id: str, *, review_round: int | None = None) -> list[dict[str, Any]]:
        q = self.client.table("reviewer_assignments").select("*").eq("submission_id", str(submission_id))
        if review_round is not None:
            q = q.eq("review_round", int(review_round))
        resp = q.order("assigned_at", desc=False).execute()
        return _rows(resp)

    def insert_assignments(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # 单次批量 insert：PostgREST 在一个事务里写入，要么全部成功要么全部失败
        resp = self.client.table("reviewer_assignments").insert(rows).execute()
        return _rows(resp)

    def update_assignment(
        self,
        assignment_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Iterable[str] | None = None,
    ) -> Optional[dict[str, Any]]:
        q = self.client.table("reviewer_assignments").update(fields).eq("id", str(assignment_id))
        if expected_statuses is not None:
            q = q.in_("status", list(expected_statuses))
        return _first(q.execute())

    def delete_assignments(self, assignment_ids: Iterable[str]) -> None:
        ids = [str(i) for i in assignment_ids if i]
        if not ids:
            return
        self.client.table("reviewer_assignments").delete().in_("id", ids).execute()

    # --- reviews ---

    def list_reviews(
        self,
        submission_id: str,
        *,
        review_round: int | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        q = self.client.table("reviews").select("*").eq("submission_id", str(submission_id))
        if review_round is not None:
            q = q.eq("review_round", int(review_round))
        if status is not None:
            q = q.eq("status", status)
        resp = q.order("submitted_at", desc=False).execute()
        return _rows(resp)

    def get_review(self, review_id: str) -> Optional[dict[str, Any]]:
        resp = self.client.table("reviews").select("*").eq("id", str(review_id)).limit(1).execute()
        return _first(resp)

    def find_review_for_assignment(self, assignment_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("reviews")
            .select("*")
            .eq("assignment_id", str(assignment_id))
            .limit(1)
            .execute()
        )
        return _first(resp)

    def insert_review(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self.client.table("reviews").insert(payload).execute()
        row = _first(resp)
        if not row:
            raise RuntimeError("Failed to save review")
        return row

    def update_review(
        self,
        review_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Optional[dict[str, Any]]:
        q = self.client.table("reviews").update(fields).eq("id", str(review_id))
        if expected_status is not None:
            q = q.eq("status", expected_status)
        return _first(q.execute())

    def delete_reviews_for_assignments(self, assignment_ids: Iterable[str]) -> None:
        ids = [str(i) for i in assignment_ids if i]
        if not ids:
            return
        self.client.table("reviews").delete().in_("assignment_id", ids).execute()

    # --- review_replies ---

    def list_replies(self, review_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = [str(i) for i in review_ids if i]
        if not ids:
            return []
        resp = (
            self.client.table("review_replies")
            .select("*")
            .in_("review_id", ids)
            .order("created_at", desc=False)
            .execute()
        )
        return _rows(resp)

    def get_reply(self, reply_id: str) -> Optional[dict[str, Any]]:
        resp = self.client.table("review_replies").select("*").eq("id", str(reply_id)).limit(1).execute()
        return _first(resp)

    def insert_reply(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self.client.table("review_replies").insert(payload).execute()
        row = _first(resp)
        if not row:
            raise RuntimeError("Failed to save reply")
        return row

    def update_reply(self, reply_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        resp = self.client.table("review_replies").update(fields).eq("id", str(reply_id)).execute()
        return _first(resp)

    def delete_reply(self, reply_id: str) -> None:
        self.client.table("review_replies").delete().eq("id", str(reply_id)).execute()

    # --- conflict_of_interest_forms ---

    def list_conflict_forms(self, submission_id: str) -> list[dict[str, Any]]:
        resp = (
            self.client.table("conflict_of_interest_forms")
            .select("*")
            .eq("submission_id", str(submission_id))
            .order("created_at", desc=False)
            .execute()
        )
        return _rows(resp)

    def insert_conflict_form(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self.client.table("conflict_of_interest_forms").insert(payload).execute()
        row = _first(resp)
        if not row:
            raise RuntimeError("Failed to save conflict of interest declaration")
        return row

    # --- user_profiles ---

    def list_reviewer_profiles(self) -> list[dict[str, Any]]:
        resp = (
            self.client.table("user_profiles")
            .select("id,email,full_name,roles")
            .contains("roles", ["reviewer"])
            .execute()
        )
        return _rows(resp)

    def get_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("user_profiles")
            .select("id,email,full_name,roles")
            .eq("id", str(user_id))
            .limit(1)
            .execute()
        )
        return _first(resp)

    # --- audit / comments ---

    def insert_comment(self, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        resp = self.client.table("submission_comments").insert(payload).execute()
        return _first(resp)

    def insert_transition_log(self, payload: dict[str, Any]) -> None:
        """
        写入 status_transition_logs（失败则降级忽略，不阻断状态流转）。
        """
        try:
            self.client.table("status_transition_logs").insert(payload).execute()
        except Exception as e:
            logger.warning(f"[Workflow] transition log insert failed (ignored): {e}")

    def list_transition_logs(self, submission_id: str) -> list[dict[str, Any]]:
        resp = (
            self.client.table("status_transition_logs")
            .select("*")
            .eq("submission_id", str(submission_id))
            .order("created_at", desc=False)
            .execute()
        )
        return _rows(resp)
