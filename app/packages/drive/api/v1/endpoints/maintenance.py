"""运维路由：手动触发一次对账清理。"""

from fastapi import APIRouter, Depends

from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import require_super_admin
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.sweeper import sweeper

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/sweep")
def run_sweep(current_user: User = Depends(require_super_admin)) -> dict:
    report = sweeper.run_once()
    return create_response("清理任务执行完成", report.to_dict(), HTTP_STATUS_OK)
