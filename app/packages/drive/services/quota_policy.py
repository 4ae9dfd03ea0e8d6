"""配额策略引擎：根据套餐额度对一次上传请求做无副作用的判定。

``evaluate`` 是纯函数：不访问数据库，不修改任何状态，所有检查相互独立，
一次返回全部违规项，便于客户端一次性展示。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.enums import FileCategoryEnum, QuotaReasonEnum

_DOCUMENT_TYPES = {
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/rtf",
}


def format_bytes(size: int) -> str:
    """把字节数格式化为易读的字符串，例如 ``4.90 GB``。"""
    value = float(max(size, 0))
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"


def classify_mime(mimetype: Optional[str]) -> str:
    """返回 MIME 类型对应的统计类别。"""
    mime = (mimetype or "").lower()
    if mime.startswith("image/"):
        return FileCategoryEnum.IMAGES.value
    if mime.startswith("video/"):
        return FileCategoryEnum.VIDEOS.value
    if mime == "application/pdf":
        return FileCategoryEnum.PDFS.value
    if mime.startswith("text/") or mime in _DOCUMENT_TYPES:
        return FileCategoryEnum.DOCUMENTS.value
    return FileCategoryEnum.OTHERS.value


@dataclass(frozen=True)
class PlanLimits:
    name: str
    max_storage: int
    max_files: int
    max_file_size: int
    daily_upload_limit: int
    daily_upload_count: int
    allowed_types: tuple[str, ...]

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PlanLimits":
        settings = settings or get_settings()
        return cls(
            name=settings.plan_name,
            max_storage=settings.plan_max_storage,
            max_files=settings.plan_max_files,
            max_file_size=settings.plan_max_file_size,
            daily_upload_limit=settings.plan_daily_upload_limit,
            daily_upload_count=settings.plan_daily_upload_count,
            allowed_types=tuple(settings.plan_allowed_types),
        )

    def allows_type(self, mimetype: str) -> bool:
        mime = (mimetype or "").lower()
        if "*" in self.allowed_types:
            return True
        return mime.startswith("image/") or mime in self.allowed_types


@dataclass(frozen=True)
class UploadRequest:
    size: int
    mimetype: str


@dataclass(frozen=True)
class UsageTotals:
    """``used`` 为字节数；``available`` 仅在需要核对个人分配额度时提供。"""

    used: int = 0
    file_count: int = 0
    available: Optional[int] = None


@dataclass(frozen=True)
class DailyTotals:
    upload_size: int = 0
    upload_count: int = 0


@dataclass(frozen=True)
class CompanyTotals:
    used: int
    total: int


@dataclass(frozen=True)
class PolicyContext:
    user_today: DailyTotals = field(default_factory=DailyTotals)
    user_totals: UsageTotals = field(default_factory=UsageTotals)
    company_totals: Optional[CompanyTotals] = None


@dataclass(frozen=True)
class Violation:
    reason: str
    message: str
    remaining: int
    limit: int

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message, "remaining": self.remaining, "limit": self.limit}


@dataclass(frozen=True)
class PolicyDecision:
    violations: tuple[Violation, ...] = ()

    @property
    def allowed(self) -> bool:
        return not self.violations

    @property
    def reasons(self) -> list[str]:
        return [v.reason for v in self.violations]


def evaluate(request: UploadRequest, context: PolicyContext, limits: PlanLimits) -> PolicyDecision:
    violations: list[Violation] = []
    size = request.size
    totals = context.user_totals
    today = context.user_today

    if size > limits.max_file_size:
        violations.append(
            Violation(
                QuotaReasonEnum.FILE_SIZE.value,
                f"单个文件不能超过 {format_bytes(limits.max_file_size)}（当前 {format_bytes(size)}）",
                limits.max_file_size,
                limits.max_file_size,
            )
        )

    storage_remaining = max(0, limits.max_storage - totals.used)
    if totals.used + size > limits.max_storage:
        violations.append(
            Violation(
                QuotaReasonEnum.STORAGE.value,
                f"套餐存储空间不足：剩余 {format_bytes(storage_remaining)}（{storage_remaining} 字节）",
                storage_remaining,
                limits.max_storage,
            )
        )

    if totals.file_count >= limits.max_files:
        violations.append(
            Violation(
                QuotaReasonEnum.FILE_COUNT.value,
                f"文件数量已达上限 {limits.max_files} 个，剩余 0 个",
                0,
                limits.max_files,
            )
        )

    daily_remaining = max(0, limits.daily_upload_limit - today.upload_size)
    if today.upload_size + size > limits.daily_upload_limit:
        violations.append(
            Violation(
                QuotaReasonEnum.DAILY.value,
                f"今日上传流量不足：剩余 {format_bytes(daily_remaining)}（{daily_remaining} 字节）",
                daily_remaining,
                limits.daily_upload_limit,
            )
        )

    if today.upload_count >= limits.daily_upload_count:
        violations.append(
            Violation(
                QuotaReasonEnum.DAILY_COUNT.value,
                f"今日上传次数已达上限 {limits.daily_upload_count} 次，剩余 0 次",
                0,
                limits.daily_upload_count,
            )
        )

    if not limits.allows_type(request.mimetype):
        violations.append(
            Violation(
                QuotaReasonEnum.FILE_TYPE.value,
                f"当前套餐不支持的文件类型：{request.mimetype}",
                0,
                0,
            )
        )

    company = context.company_totals
    if company is not None and company.used + size > company.total:
        company_remaining = max(0, company.total - company.used)
        violations.append(
            Violation(
                QuotaReasonEnum.COMPANY_STORAGE.value,
                f"公司存储空间不足：剩余 {format_bytes(company_remaining)}（{company_remaining} 字节）",
                company_remaining,
                company.total,
            )
        )

    if totals.available is not None and size > totals.available:
        violations.append(
            Violation(
                QuotaReasonEnum.ALLOCATION.value,
                f"个人分配空间不足：剩余 {format_bytes(totals.available)}（{totals.available} 字节）",
                totals.available,
                totals.available,
            )
        )

    return PolicyDecision(tuple(violations))
