from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Mapping, Protocol, Sequence

from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas

from ethicsflow.models.documents import APPROVAL_ARTIFACT_TITLES, DocumentType


class DocumentGenerator(Protocol):
    def generate(
        self,
        kind: str,
        submission: Mapping[str, Any],
        reviews: Sequence[Mapping[str, Any]],
    ) -> bytes: ...


_SECTION_FIELDS = {
    DocumentType.FORM_0011.value: ("protocol_recommendation", "protocol_ethics_recommendation"),
    DocumentType.FORM_0012.value: ("icf_recommendation", "icf_ethics_recommendation"),
}


class ReportLabDocumentGenerator:
    """
    使用 ReportLab 生成批准文件 PDF（CPU 本地生成，避免 WeasyPrint 重依赖）

    中文注释:
    1. 只负责把稿件快照 + 审稿快照画成 PDF bytes；版式细节不属于工作流。
    2. 与发票生成不同，这里失败直接抛异常，由 ApprovalArtifactTrigger 记录并允许修复重试。
    """

    def generate(
        self,
        kind: str,
        submission: Mapping[str, Any],
        reviews: Sequence[Mapping[str, Any]],
    ) -> bytes:
        if kind not in APPROVAL_ARTIFACT_TITLES:
            raise ValueError(f"Unsupported approval document kind: {kind}")

        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=LETTER)

        width, height = LETTER
        left = 0.9 * inch
        y = height - 0.9 * inch

        c.setFont("Helvetica-Bold", 18)
        c.drawString(left, y, APPROVAL_ARTIFACT_TITLES[kind])
        y -= 0.35 * inch

        c.setFont("Helvetica", 10)
        c.drawString(left, y, f"Tracking Code: {submission.get('tracking_code') or submission.get('id')}")
        y -= 0.18 * inch
        c.drawString(left, y, f"Date: {datetime.now(timezone.utc).strftime('%Y-%m-%d')}")
        y -= 0.35 * inch

        c.setLineWidth(1)
        c.line(left, y, width - left, y)
        y -= 0.35 * inch

        c.setFont("Helvetica-Bold", 12)
        c.drawString(left, y, "Research Details")
        y -= 0.22 * inch

        c.setFont("Helvetica", 10)
        title = str(submission.get("title") or "").strip() or "Research Proposal"
        c.drawString(left, y, f"Title: {title[:90]}")
        y -= 0.18 * inch
        c.drawString(left, y, f"Classification: {submission.get('classification_type') or '-'}")
        y -= 0.18 * inch
        college = submission.get("college") or submission.get("organization") or "-"
        c.drawString(left, y, f"College / Organization: {college}")
        y -= 0.35 * inch

        if kind == DocumentType.CERTIFICATE_OF_APPROVAL.value:
            c.setFont("Helvetica", 11)
            c.drawString(
                left,
                y,
                "The Research Ethics Committee has reviewed and approved the above research proposal.",
            )
            y -= 0.22 * inch
            c.drawString(left, y, f"Number of reviewers: {len(reviews)}")
        else:
            rec_field, text_field = _SECTION_FIELDS[kind]
            c.setFont("Helvetica-Bold", 12)
            c.drawString(left, y, "Reviewer Recommendations")
            y -= 0.22 * inch
            c.setFont("Helvetica", 10)
            for idx, review in enumerate(reviews, start=1):
                if y < 1.5 * inch:
                    c.showPage()
                    c.setFont("Helvetica", 10)
                    y = height - 0.9 * inch
                c.drawString(left, y, f"Reviewer {idx}: {review.get(rec_field) or '-'}")
                y -= 0.18 * inch
                note = str(review.get(text_field) or "").strip()
                if note:
                    c.drawString(left + 0.2 * inch, y, note[:100])
                    y -= 0.18 * inch

        c.setFont("Helvetica", 8)
        c.setFillColorRGB(0.45, 0.45, 0.45)
        c.drawString(left, 0.9 * inch, "This is a system-generated document of the Research Ethics Committee.")

        c.showPage()
        c.save()
        buf.seek(0)
        return buf.read()
