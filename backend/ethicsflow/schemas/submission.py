from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


ClassificationValue = Literal["Exempted", "Expedited", "Full Review"]


class SubmissionCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    college: str | None = Field(default=None, max_length=200)
    organization: str | None = Field(default=None, max_length=200)


class DocumentVerificationItem(BaseModel):
    document_id: UUID
    is_approved: bool
    feedback_comment: str | None = Field(default=None, max_length=5000)


class VerificationRequest(BaseModel):
    verifications: list[DocumentVerificationItem] = Field(min_length=1)


class ClassificationRequest(BaseModel):
    classification: ClassificationValue


class RevisionRequest(BaseModel):
    comment: str | None = Field(default=None, max_length=10000)
    flagged_document_types: list[str] = Field(default_factory=list)


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=5000)


class AssignReviewersRequest(BaseModel):
    reviewer_ids: list[str] = Field(min_length=1)


class ReassignRequest(BaseModel):
    reviewer_id: str = Field(min_length=1)
