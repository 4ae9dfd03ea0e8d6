"""配额快照响应模型。"""

from pydantic import BaseModel

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class StorageQuota(BaseModel):
    used: int
    allocatedToUsers: int
    total: int
    available: int
    percentage: float
    isNearLimit: bool
    isCritical: bool


class FilesQuota(BaseModel):
    count: int
    max: int
    remaining: int
    isNearLimit: bool


class DailyQuota(BaseModel):
    used: int
    limit: int
    remaining: int
    percentage: float
    isNearLimit: bool


class TypeUsageItem(BaseModel):
    count: int
    size: int


class QuotaSnapshot(BaseModel):
    plan: str
    storage: StorageQuota
    files: FilesQuota
    daily: DailyQuota
    byType: dict[str, TypeUsageItem]


QuotaSnapshotResponse = ResponseEnvelope[QuotaSnapshot]
