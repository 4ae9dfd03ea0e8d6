"""公司管理路由。"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.companies import (
    CompanyMutationResponse,
    CompanyResponse,
    CompanyStorageUpdate,
    FixAllocationsRequest,
    MemberCreateRequest,
)
from app.packages.drive.core.dependencies import get_current_active_user, get_db, require_admin, require_super_admin
from app.packages.drive.models.user import User
from app.packages.drive.services.company_service import company_service

router = APIRouter(prefix="/companies", tags=["companies"])


@router.get("/me", response_model=CompanyResponse)
def get_my_company(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CompanyResponse:
    return company_service.get_my_company(db, current_user)


@router.get("/summary", response_model=CompanyResponse)
def get_summary(
    company_id: Optional[int] = Query(None, alias="companyId"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CompanyResponse:
    """管理员查看本公司容量与成员分配概览。"""
    return company_service.get_summary(db, current_user, company_id)


@router.put("/{company_id}/storage", response_model=CompanyResponse)
def update_storage(
    company_id: int,
    payload: CompanyStorageUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CompanyResponse:
    return company_service.update_storage(db, current_user, company_id, payload.totalStorage)


@router.post("/fix-allocations", response_model=CompanyResponse)
def fix_allocations(
    payload: Optional[FixAllocationsRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CompanyResponse:
    """根据文件记录重新计算公司及成员的容量账本。"""
    company_id = payload.companyId if payload is not None else None
    return company_service.fix_allocations(db, current_user, company_id)


@router.post("/members", response_model=CompanyMutationResponse)
def add_member(
    payload: MemberCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> CompanyMutationResponse:
    return company_service.add_member(
        db,
        current_user,
        username=payload.username,
        password=payload.password,
        email=payload.email,
        storage_allocated=payload.storageAllocated,
    )


@router.delete("/{company_id}", response_model=CompanyMutationResponse)
def delete_company(
    company_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_super_admin),
) -> CompanyMutationResponse:
    return company_service.delete_company(db, current_user, company_id)
