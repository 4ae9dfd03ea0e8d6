"""容量分配路由：平台 -> 公司 -> 成员。"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.companies import (
    AllocateToCompanyRequest,
    AllocateToUserRequest,
    StorageAllocationResponse,
)
from app.packages.drive.core.dependencies import get_current_active_user, get_db, require_admin
from app.packages.drive.models.user import User
from app.packages.drive.services.storage_service import storage_service

router = APIRouter(prefix="/storage", tags=["storage"])


@router.post("/allocate-to-company", response_model=StorageAllocationResponse)
def allocate_to_company(
    payload: AllocateToCompanyRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> StorageAllocationResponse:
    return storage_service.allocate_to_company(
        db, current_user, company_id=payload.companyId, storage_bytes=payload.storageBytes
    )


@router.post("/allocate-to-user", response_model=StorageAllocationResponse)
def allocate_to_user(
    payload: AllocateToUserRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> StorageAllocationResponse:
    """管理员在自身可分配额度内为成员设置容量。"""
    return storage_service.allocate_to_user(
        db, current_user, user_id=payload.userId, storage_bytes=payload.storageBytes
    )


@router.get("/users/{user_id}", response_model=StorageAllocationResponse)
def get_user_storage(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> StorageAllocationResponse:
    return storage_service.get_user_storage(db, current_user, user_id)
