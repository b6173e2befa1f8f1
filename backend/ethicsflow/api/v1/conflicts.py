from fastapi import APIRouter, Depends

from ethicsflow.core.role_matrix import Principal
from ethicsflow.core.roles import get_current_principal
from ethicsflow.schemas.review import ConflictDeclaration
from ethicsflow.schemas.submission import ReassignRequest
from ethicsflow.services.workflow import EthicsWorkflow, get_workflow

router = APIRouter(prefix="/submissions", tags=["Conflict of Interest"])


@router.post("/{submission_id}/conflict-of-interest", status_code=201)
async def declare_conflict(
    submission_id: str,
    body: ConflictDeclaration,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    审稿人声明利益冲突；任意一项为 true 时立即移除该审稿人的分配。
    """
    flags = body.model_dump(exclude={"remarks"})
    result = workflow.conflicts.declare(principal, submission_id, flags, body.remarks)
    return {"success": True, "data": result}


@router.post("/{submission_id}/conflict-of-interest/resolve")
async def resolve_conflicts(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    return {"success": True, "data": workflow.conflicts.resolve(principal, submission_id)}


@router.get("/{submission_id}/replacement-reviewers")
async def replacement_reviewers(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    return {"success": True, "data": workflow.conflicts.available_replacements(principal, submission_id)}


@router.post("/{submission_id}/replacement-reviewers", status_code=201)
async def reassign_reviewer(
    submission_id: str,
    body: ReassignRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    result = workflow.conflicts.reassign(principal, submission_id, body.reviewer_id)
    return {"success": True, "data": result}
