"""文件查询相关响应模型。"""

from typing import Any, Optional

from pydantic import BaseModel

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class PresignedLink(BaseModel):
    url: str
    expiresIn: int
    fileName: Optional[str] = None
    mimeType: Optional[str] = None


FilesListResponse = ResponseEnvelope[dict[str, Any]]
FileMetadataResponse = ResponseEnvelope[dict[str, Any]]
PresignedLinkResponse = ResponseEnvelope[PresignedLink]
FileMutationResponse = ResponseEnvelope[Any]
