"""直传上传协议的请求/响应模型。"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class UploadInitRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    size: int = Field(..., gt=0)
    mimeType: str = Field(default="application/octet-stream", min_length=1, max_length=255)
    useMultipart: Optional[bool] = None


class CompletedPartBody(BaseModel):
    partNumber: int = Field(..., ge=1, le=10000)
    etag: str = Field(..., min_length=1)


class UploadFinalizeRequest(BaseModel):
    parts: Optional[list[CompletedPartBody]] = None


class QuotaCheckRequest(BaseModel):
    size: int = Field(..., gt=0)
    mimeType: str = Field(default="application/octet-stream", min_length=1)


class PartUrl(BaseModel):
    partNumber: int
    url: str
    method: str


class UploadInitData(BaseModel):
    fileId: int
    storageKey: str
    useMultipart: bool
    expiresIn: int
    uploadUrl: Optional[str] = None
    method: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    uploadId: Optional[str] = None
    partSize: Optional[int] = None
    partCount: Optional[int] = None
    parts: Optional[list[PartUrl]] = None
    quota: Optional[dict[str, Any]] = None


UploadInitResponse = ResponseEnvelope[UploadInitData]
UploadFinalizeResponse = ResponseEnvelope[dict[str, Any]]
PendingUploadsResponse = ResponseEnvelope[list[dict[str, Any]]]
QuotaCheckResponse = ResponseEnvelope[dict[str, Any]]
UploadMutationResponse = ResponseEnvelope[Any]
