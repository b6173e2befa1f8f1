"""
审查工作流错误分类。

中文注释:
- 所有校验错误都是确定性的，直接返回给调用方，不做静默重试。
- `type` 字段是稳定的错误码，前端据此展示文案；`status_code` 供 HTTP 层映射。
"""

from __future__ import annotations

from typing import Any, Optional


class WorkflowError(Exception):
    status_code: int = 400
    code: str = "workflow_error"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.detail, "type": self.code}
        if self.context:
            payload["context"] = self.context
        return payload


class NotFound(WorkflowError):
    status_code = 404
    code = "not_found"


class PermissionDenied(WorkflowError):
    status_code = 403
    code = "permission_denied"


class InvalidTransition(WorkflowError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, *, current: Optional[str], requested: str, detail: Optional[str] = None) -> None:
        super().__init__(
            detail or f"Invalid transition: {current or 'unknown'} -> {requested}",
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class QuotaExceeded(WorkflowError):
    status_code = 422
    code = "quota_exceeded"


class AlreadyAssigned(WorkflowError):
    status_code = 409
    code = "already_assigned"


class Conflicted(WorkflowError):
    status_code = 409
    code = "conflicted"


class NotEligible(WorkflowError):
    status_code = 422
    code = "not_eligible"


class NotComplete(WorkflowError):
    status_code = 409
    code = "not_complete"


class DuplicateSubmission(WorkflowError):
    status_code = 409
    code = "duplicate_submission"


class DeclarationClosed(WorkflowError):
    status_code = 409
    code = "declaration_closed"


class RevisionIncomplete(WorkflowError):
    status_code = 422
    code = "revision_incomplete"


class StaleRead(WorkflowError):
    status_code = 409
    code = "stale_read"


class ArtifactGenerationFailure(WorkflowError):
    status_code = 502
    code = "artifact_generation_failure"

    def __init__(self, detail: str, *, failed_kinds: list[str] | None = None) -> None:
        super().__init__(detail, failed_kinds=list(failed_kinds or []))
        self.failed_kinds = list(failed_kinds or [])
