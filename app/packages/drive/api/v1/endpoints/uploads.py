"""直传上传路由：申请上传、确认上传、取消上传与配额预检。

文件字节不经过本服务，客户端拿到预签名地址后直接写入对象存储。
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.uploads import (
    PendingUploadsResponse,
    QuotaCheckRequest,
    QuotaCheckResponse,
    UploadFinalizeRequest,
    UploadFinalizeResponse,
    UploadInitRequest,
    UploadInitResponse,
    UploadMutationResponse,
)
from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import get_current_active_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.object_store import CompletedPart
from app.packages.drive.services.upload_service import upload_service

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/check-quota", response_model=QuotaCheckResponse)
def check_quota(
    payload: QuotaCheckRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> QuotaCheckResponse:
    """仅做预检，不创建任何记录。"""
    decision = upload_service.check_quota(db, current_user, size=payload.size, mime_type=payload.mimeType)
    data = {
        "allowed": decision.allowed,
        "reasons": decision.reasons,
        "violations": [violation.to_dict() for violation in decision.violations],
    }
    return create_response("配额检查完成", data, HTTP_STATUS_OK)


@router.post("/init", response_model=UploadInitResponse)
def init_upload(
    payload: UploadInitRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> UploadInitResponse:
    data = upload_service.init_upload(
        db,
        current_user,
        filename=payload.filename,
        size=payload.size,
        mime_type=payload.mimeType,
        use_multipart=payload.useMultipart,
    )
    return create_response("上传地址已生成", data, HTTP_STATUS_OK)


@router.post("/{file_id}/finalize", response_model=UploadFinalizeResponse)
def finalize_upload(
    file_id: int,
    payload: Optional[UploadFinalizeRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> UploadFinalizeResponse:
    """核对对象存储中的实际大小后记账。"""
    parts = None
    if payload is not None and payload.parts:
        parts = [CompletedPart(part_number=item.partNumber, etag=item.etag) for item in payload.parts]
    data = upload_service.finalize_upload(db, current_user, file_id, parts=parts)
    return create_response("上传完成", data, HTTP_STATUS_OK)


@router.post("/{file_id}/abort", response_model=UploadMutationResponse)
def abort_upload(
    file_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> UploadMutationResponse:
    upload_service.abort_upload(db, current_user, file_id)
    return create_response("上传已取消", None, HTTP_STATUS_OK)


@router.get("/pending", response_model=PendingUploadsResponse)
def list_pending(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PendingUploadsResponse:
    return create_response("获取未完成上传成功", upload_service.list_pending(db, current_user), HTTP_STATUS_OK)
