from fastapi import APIRouter, Depends

from ethicsflow.core.security import require_admin_key
from ethicsflow.services.workflow import EthicsWorkflow, get_workflow

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post("/cron/repair-approval-artifacts")
async def repair_all_approval_artifacts(
    _admin: None = Depends(require_admin_key),
    workflow: EthicsWorkflow = Depends(get_workflow),
):
    """
    批量补齐批准文件（内部接口）
    """
    result = workflow.artifacts.repair_all()
    return {"success": True, **result}
