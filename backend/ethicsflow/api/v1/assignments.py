from fastapi import APIRouter, Depends

from ethicsflow.core.role_matrix import Principal
from ethicsflow.core.roles import get_current_principal
from ethicsflow.schemas.submission import AssignReviewersRequest
from ethicsflow.services.workflow import EthicsWorkflow, get_workflow

router = APIRouter(prefix="/submissions", tags=["Reviewer Assignment"])


@router.get("/{submission_id}/eligible-reviewers")
async def eligible_reviewers(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    submission = workflow.store.get_submission(submission_id)
    rows = workflow.assignments.eligible_reviewers(principal, submission_id)
    return {
        "success": True,
        "data": rows,
        "quota": workflow.policy.quota_for(submission.get("classification_type")),
    }


@router.post("/{submission_id}/assignments", status_code=201)
async def assign_reviewers(
    submission_id: str,
    body: AssignReviewersRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    分配审稿人（全有或全无）；成功后稿件进入 under_review。
    """
    result = workflow.assignments.assign(principal, submission_id, body.reviewer_ids)
    return {"success": True, "data": result}


@router.post("/{submission_id}/assignments/revision-round", status_code=201)
async def assign_revision_round(
    submission_id: str,
    body: AssignReviewersRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    result = workflow.assignments.assign_revision_round(principal, submission_id, body.reviewer_ids)
    return {"success": True, "data": result}
