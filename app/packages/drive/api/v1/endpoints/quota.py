"""配额快照路由。"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.quota import QuotaSnapshotResponse
from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import get_current_active_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.quota_ledger import quota_ledger

router = APIRouter(prefix="/quota", tags=["quota"])


@router.get("", response_model=QuotaSnapshotResponse)
def get_quota(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> QuotaSnapshotResponse:
    return create_response("获取配额信息成功", quota_ledger.snapshot(db, current_user), HTTP_STATUS_OK)
