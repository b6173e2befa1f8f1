from fastapi import APIRouter, Depends

from ethicsflow.core.role_matrix import Principal
from ethicsflow.core.roles import get_current_principal
from ethicsflow.schemas.review import ReplyCreate, ReviewDraft, ReviewSubmission
from ethicsflow.services.workflow import EthicsWorkflow, get_workflow

router = APIRouter(tags=["Reviews"])


@router.put("/submissions/{submission_id}/review/draft")
async def save_review_draft(
    submission_id: str,
    body: ReviewDraft,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    review = workflow.consensus.save_draft(principal, submission_id, body.model_dump(exclude_unset=True))
    return {"success": True, "data": review}


@router.post("/submissions/{submission_id}/review", status_code=201)
async def submit_review(
    submission_id: str,
    body: ReviewSubmission,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    提交审稿意见（一次性写入）。

    中文注释:
    - 最后一位审稿人提交后，会在同一请求内计算共识结果并推进稿件状态。
    """
    result = workflow.consensus.submit(principal, submission_id, body.model_dump())
    return {"success": True, "data": result}


@router.get("/submissions/{submission_id}/completion")
async def review_completion(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    workflow.consensus.require_viewer(principal, submission_id)
    return {"success": True, "data": {"is_complete": workflow.consensus.is_complete(submission_id)}}


@router.get("/submissions/{submission_id}/evaluations")
async def consolidated_evaluations(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    return {"success": True, "data": workflow.consensus.evaluations(principal, submission_id)}


@router.post("/reviews/{review_id}/replies", status_code=201)
async def post_reply(
    review_id: str,
    body: ReplyCreate,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    return {"success": True, "data": workflow.consensus.post_reply(principal, review_id, body.reply_text)}


@router.patch("/reviews/replies/{reply_id}")
async def edit_reply(
    reply_id: str,
    body: ReplyCreate,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    return {"success": True, "data": workflow.consensus.edit_reply(principal, reply_id, body.reply_text)}


@router.delete("/reviews/replies/{reply_id}")
async def delete_reply(
    reply_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    workflow.consensus.delete_reply(principal, reply_id)
    return {"success": True}
