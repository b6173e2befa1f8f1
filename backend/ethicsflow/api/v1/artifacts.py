from fastapi import APIRouter, Depends

from ethicsflow.core.role_matrix import Principal
from ethicsflow.core.roles import get_current_principal
from ethicsflow.services.workflow import EthicsWorkflow, get_workflow

router = APIRouter(prefix="/submissions", tags=["Approval Artifacts"])


@router.post("/{submission_id}/approval-artifacts/repair")
async def repair_approval_artifacts(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    重新生成缺失的批准文件（幂等，已存在的类型不会重复生成）。
    """
    created = workflow.artifacts.repair(principal, submission_id)
    return {"success": True, "data": {"created": created, "count": len(created)}}
