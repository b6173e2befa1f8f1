from __future__ import annotations

from enum import Enum


class DocumentType(str, Enum):
    APPLICATION_FORM = "application_form"
    RESEARCH_PROTOCOL = "research_protocol"
    CONSENT_FORM = "consent_form"
    RESEARCH_INSTRUMENT = "research_instrument"
    ENDORSEMENT_LETTER = "endorsement_letter"
    PROPOSAL_DEFENSE = "proposal_defense"
    CONSOLIDATED_APPLICATION = "consolidated_application"
    CONSOLIDATED_REVIEW = "consolidated_review"
    CERTIFICATE_OF_APPROVAL = "certificate_of_approval"
    FORM_0011 = "form_0011"
    FORM_0012 = "form_0012"


ORIGINAL_DOCUMENT_TYPES: tuple[str, ...] = (
    DocumentType.APPLICATION_FORM.value,
    DocumentType.RESEARCH_PROTOCOL.value,
    DocumentType.CONSENT_FORM.value,
    DocumentType.RESEARCH_INSTRUMENT.value,
    DocumentType.ENDORSEMENT_LETTER.value,
    DocumentType.PROPOSAL_DEFENSE.value,
)

CONSOLIDATED_DOCUMENT_TYPES: tuple[str, ...] = (
    DocumentType.CONSOLIDATED_APPLICATION.value,
    DocumentType.CONSOLIDATED_REVIEW.value,
)

# 生成顺序即批准文件集合的顺序
APPROVAL_ARTIFACT_TYPES: tuple[str, ...] = (
    DocumentType.CERTIFICATE_OF_APPROVAL.value,
    DocumentType.FORM_0011.value,
    DocumentType.FORM_0012.value,
)

APPROVAL_ARTIFACT_TITLES: dict[str, str] = {
    DocumentType.CERTIFICATE_OF_APPROVAL.value: "Certificate of Ethics Approval",
    DocumentType.FORM_0011.value: "Form 0011 - Protocol Review Summary",
    DocumentType.FORM_0012.value: "Form 0012 - Informed Consent Review Summary",
}

# 存储的文件名与 PDF 内的标题一致
APPROVAL_ARTIFACT_FILE_NAMES: dict[str, str] = {kind: f"{title}.pdf" for kind, title in APPROVAL_ARTIFACT_TITLES.items()}

DOCUMENT_LABELS: dict[str, str] = {
    DocumentType.APPLICATION_FORM.value: "Application Form",
    DocumentType.RESEARCH_PROTOCOL.value: "Research Protocol",
    DocumentType.CONSENT_FORM.value: "Informed Consent Form",
    DocumentType.RESEARCH_INSTRUMENT.value: "Research Instrument",
    DocumentType.ENDORSEMENT_LETTER.value: "Endorsement Letter",
    DocumentType.PROPOSAL_DEFENSE.value: "Proposal Defense",
    DocumentType.CONSOLIDATED_APPLICATION.value: "Consolidated Application",
    DocumentType.CONSOLIDATED_REVIEW.value: "Consolidated Review",
}


def normalize_document_type(value: str | None) -> str | None:
    v = str(value or "").strip().lower()
    if not v:
        return None
    try:
        return DocumentType(v).value
    except ValueError:
        return None
