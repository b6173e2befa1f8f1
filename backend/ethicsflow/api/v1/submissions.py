from fastapi import APIRouter, Depends, File, Form, UploadFile

from ethicsflow.core.role_matrix import Principal
from ethicsflow.core.roles import get_current_principal
from ethicsflow.schemas.submission import (
    ClassificationRequest,
    RejectRequest,
    RevisionRequest,
    SubmissionCreate,
    VerificationRequest,
)
from ethicsflow.services.workflow import EthicsWorkflow, get_workflow

router = APIRouter(prefix="/submissions", tags=["Submissions"])


@router.post("", status_code=201)
async def create_submission(
    body: SubmissionCreate,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    研究者提交新的伦理审查申请（status=new_submission）。
    """
    row = workflow.intake.create_submission(
        principal,
        title=body.title,
        college=body.college,
        organization=body.organization,
    )
    return {"success": True, "data": row}


@router.get("/{submission_id}")
async def get_submission(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    row = workflow.intake.get_submission(principal, submission_id)
    return {"success": True, "data": row}


@router.post("/{submission_id}/documents", status_code=201)
async def upload_document(
    submission_id: str,
    document_type: str = Form(...),
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    content = await file.read()
    row = workflow.intake.upload_document(
        principal,
        submission_id,
        document_type=document_type,
        file_name=file.filename or "document",
        content=content,
        content_type=file.content_type or "application/octet-stream",
    )
    return {"success": True, "data": row}


@router.get("/{submission_id}/documents")
async def list_documents(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    当前状态下对调用者可见的文档（每次请求重新计算，附带限时签名链接）。
    """
    return {"success": True, "data": workflow.documents.list_visible(principal, submission_id)}


@router.post("/{submission_id}/verification")
async def verify_documents(
    submission_id: str,
    body: VerificationRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    row = workflow.state_machine.verify_documents(
        principal,
        submission_id,
        [item.model_dump(mode="json") for item in body.verifications],
    )
    return {"success": True, "data": row}


@router.post("/{submission_id}/classification")
async def classify_submission(
    submission_id: str,
    body: ClassificationRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    row = workflow.state_machine.classify(principal, submission_id, body.classification)
    return {"success": True, "data": row}


@router.post("/{submission_id}/revision-request")
async def request_revision(
    submission_id: str,
    body: RevisionRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    row = workflow.state_machine.request_revision(
        principal, submission_id, body.comment, body.flagged_document_types
    )
    return {"success": True, "data": row}


@router.post("/{submission_id}/resubmit")
async def resubmit(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    row = workflow.state_machine.resubmit(principal, submission_id)
    return {"success": True, "data": row}


@router.post("/{submission_id}/reject")
async def reject_submission(
    submission_id: str,
    body: RejectRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    row = workflow.state_machine.reject(principal, submission_id, body.reason)
    return {"success": True, "data": row}
