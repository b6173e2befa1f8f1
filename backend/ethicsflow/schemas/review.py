from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


Recommendation = Literal[
    "Approved (No Revision)",
    "Approved with Minor Revision/s",
    "Major Revision/s",
    "Disapproved",
]


class ReviewDraft(BaseModel):
    # 中文注释: 草稿允许缺省结论；提交时两个章节的结论都必须给出。
    protocol_answers: dict[str, Any] = Field(default_factory=dict)
    consent_answers: dict[str, Any] = Field(default_factory=dict)
    protocol_recommendation: Recommendation | None = None
    protocol_disapproval_reasons: str | None = Field(default=None, max_length=20000)
    protocol_ethics_recommendation: str | None = Field(default=None, max_length=20000)
    protocol_technical_suggestions: str | None = Field(default=None, max_length=20000)
    icf_recommendation: Recommendation | None = None
    icf_disapproval_reasons: str | None = Field(default=None, max_length=20000)
    icf_ethics_recommendation: str | None = Field(default=None, max_length=20000)
    icf_technical_suggestions: str | None = Field(default=None, max_length=20000)


class ReviewSubmission(ReviewDraft):
    protocol_recommendation: Recommendation
    icf_recommendation: Recommendation


class ReplyCreate(BaseModel):
    reply_text: str = Field(min_length=1, max_length=10000)


class ConflictDeclaration(BaseModel):
    has_stock_ownership: bool = False
    has_received_compensation: bool = False
    has_official_role: bool = False
    has_prior_work_experience: bool = False
    has_standing_issue: bool = False
    has_social_relationship: bool = False
    has_ownership_interest: bool = False
    remarks: str | None = Field(default=None, max_length=5000)
