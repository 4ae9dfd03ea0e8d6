"""公司与容量分配相关的请求/响应模型。"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class CompanyStorageUpdate(BaseModel):
    totalStorage: int = Field(..., gt=0)


class FixAllocationsRequest(BaseModel):
    companyId: Optional[int] = None


class MemberCreateRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)
    email: Optional[str] = Field(default=None, max_length=255)
    storageAllocated: int = Field(default=0, ge=0)


class AllocateToCompanyRequest(BaseModel):
    companyId: int = Field(..., ge=1)
    storageBytes: int = Field(..., gt=0)


class AllocateToUserRequest(BaseModel):
    userId: int = Field(..., ge=1)
    storageBytes: int = Field(..., ge=0)


CompanyResponse = ResponseEnvelope[dict[str, Any]]
CompanyMutationResponse = ResponseEnvelope[Any]
StorageAllocationResponse = ResponseEnvelope[dict[str, Any]]
