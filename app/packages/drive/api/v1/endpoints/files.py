"""文件查询、下载链接与删除路由。"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.files import (
    FileMetadataResponse,
    FileMutationResponse,
    FilesListResponse,
    PresignedLinkResponse,
)
from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import get_current_active_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.file_service import file_service
from app.packages.drive.services.upload_service import upload_service

router = APIRouter(prefix="/files", tags=["files"])


@router.get("", response_model=FilesListResponse)
def list_files(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> FilesListResponse:
    data = file_service.list_files(db, current_user, page=page, page_size=page_size)
    return create_response("获取文件列表成功", data, HTTP_STATUS_OK)


@router.get("/{file_id}", response_model=FileMetadataResponse)
def get_file(
    file_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> FileMetadataResponse:
    return create_response("获取文件信息成功", file_service.get_metadata(db, current_user, file_id), HTTP_STATUS_OK)


@router.get("/{file_id}/download-url", response_model=PresignedLinkResponse)
def get_download_url(
    file_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PresignedLinkResponse:
    return create_response("下载链接已生成", file_service.download_url(db, current_user, file_id), HTTP_STATUS_OK)


@router.get("/{file_id}/view-url", response_model=PresignedLinkResponse)
def get_view_url(
    file_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PresignedLinkResponse:
    return create_response("预览链接已生成", file_service.view_url(db, current_user, file_id), HTTP_STATUS_OK)


@router.delete("/{file_id}", response_model=FileMutationResponse)
def delete_file(
    file_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> FileMutationResponse:
    """软删除文件并立即释放配额。"""
    upload_service.delete_file(db, current_user, file_id)
    return create_response("文件已删除", None, HTTP_STATUS_OK)
