from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from postgrest.exceptions import APIError

from ethicsflow.lib.api_client import supabase_admin
from ethicsflow.services import workflow_events as events
from ethicsflow.services.submission_store import SubmissionStore

logger = logging.getLogger("ethicsflow.notifications")


class NotificationService:
    """
    通知服务：封装 notifications 表的写入

    中文注释:
    1) 写入使用 supabase_admin（service_role），避免 RLS 导致写入失败。
    2) 这里只写站内信；邮件投递由外部通知服务订阅同一组事件完成。
    """

    def __init__(self, client: Any = None) -> None:
        self.client = client or supabase_admin

    @staticmethod
    def _normalize_action_url(action_url: Optional[str]) -> Optional[str]:
        raw = str(action_url or "").strip()
        if not raw:
            return None
        if raw.startswith("/"):
            return raw
        try:
            parsed = urlparse(raw)
        except ValueError:
            return None
        if parsed.scheme not in {"http", "https"}:
            return None
        path = parsed.path or "/"
        query = f"?{parsed.query}" if parsed.query else ""
        return f"{path}{query}"

    def create_notification(
        self,
        *,
        user_id: str,
        submission_id: Optional[str],
        type: str,
        title: str,
        content: str,
        action_url: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if not action_url:
            if type == events.ASSIGNMENT_CREATED:
                action_url = "/dashboard?tab=reviewer"
            elif submission_id:
                action_url = f"/dashboard/submissions/{submission_id}"
            else:
                action_url = "/dashboard/notifications"

        payload = {
            "user_id": user_id,
            "submission_id": submission_id,
            "action_url": self._normalize_action_url(action_url) or "/dashboard/notifications",
            "type": type,
            "title": title,
            "content": content,
            "is_read": False,
        }
        try:
            res = self.client.table("notifications").insert(payload).execute()
            rows = getattr(res, "data", None) or []
            return rows[0] if rows else None
        except APIError as e:
            # 中文注释:
            # - notifications.user_id 有外键指向 auth.users(id)；演示数据里的 profile 可能没有对应账号（23503）。
            # - 该情况对主流程无影响，这里降级为 warning。
            text = str(e).lower()
            code = str(getattr(e, "code", "") or "").lower()
            if "23503" in code or "23503" in text:
                logger.warning(f"[Notifications] skipped (missing auth user): user_id={user_id}")
                return None
            logger.error(f"[Notifications] create failed: {e}")
            return None


def register_notification_subscribers(
    bus: events.WorkflowEventBus,
    *,
    notifications: NotificationService,
    store: SubmissionStore,
) -> None:
    """
    把站内信写入挂到工作流事件上：
    - assignment_created -> 审稿人
    - revision_requested / approved -> 研究者
    - review_complete -> 研究者（审稿进度）
    """

    def _owner(submission_id: str) -> tuple[Optional[str], str]:
        row = store.find_submission(submission_id) or {}
        return row.get("user_id"), str(row.get("title") or row.get("tracking_code") or "your submission")

    def on_assignment(event: str, payload: dict[str, Any]) -> None:
        submission_id = str(payload.get("submission_id") or "")
        _, title = _owner(submission_id)
        notifications.create_notification(
            user_id=str(payload.get("reviewer_id")),
            submission_id=submission_id,
            type=event,
            title="New review assignment",
            content=f"You have been assigned to review “{title}”. Due {payload.get('due_date') or 'soon'}.",
        )

    def on_revision(event: str, payload: dict[str, Any]) -> None:
        submission_id = str(payload.get("submission_id") or "")
        owner_id, title = _owner(submission_id)
        if not owner_id:
            return
        notifications.create_notification(
            user_id=str(owner_id),
            submission_id=submission_id,
            type=event,
            title="Revision requested",
            content=f"Revisions were requested for “{title}”. {payload.get('comment') or ''}".strip(),
        )

    def on_review_complete(event: str, payload: dict[str, Any]) -> None:
        submission_id = str(payload.get("submission_id") or "")
        owner_id, title = _owner(submission_id)
        if not owner_id:
            return
        notifications.create_notification(
            user_id=str(owner_id),
            submission_id=submission_id,
            type=event,
            title="Review received",
            content=f"A reviewer has completed their evaluation of “{title}”.",
        )

    def on_approved(event: str, payload: dict[str, Any]) -> None:
        submission_id = str(payload.get("submission_id") or "")
        owner_id, title = _owner(submission_id)
        if not owner_id:
            return
        notifications.create_notification(
            user_id=str(owner_id),
            submission_id=submission_id,
            type=event,
            title="Submission approved",
            content=f"“{title}” has been approved. Your certificate of approval is available.",
        )

    bus.subscribe(events.ASSIGNMENT_CREATED, on_assignment)
    bus.subscribe(events.REVISION_REQUESTED, on_revision)
    bus.subscribe(events.REVIEW_COMPLETE, on_review_complete)
    bus.subscribe(events.APPROVED, on_approved)
