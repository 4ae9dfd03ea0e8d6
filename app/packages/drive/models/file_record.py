"""文件记录模型：描述一次直传上传及其在对象存储中的位置。"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.core.enums import UploadStatusEnum
from app.packages.drive.models.base import Base, SoftDeleteMixin, TimestampMixin


class FileRecord(TimestampMixin, SoftDeleteMixin, Base):
    """只有 ``completed`` 且未删除的记录计入配额。"""

    __tablename__ = "files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_type: Mapped[str] = mapped_column(String(20), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    upload_id: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    part_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    part_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    upload_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UploadStatusEnum.PENDING.value, index=True
    )
    upload_initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    upload_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    etag: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    uploaded_by: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    company_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("companies.id"), nullable=True, index=True
    )

    @property
    def is_multipart(self) -> bool:
        return self.upload_id is not None

    @property
    def is_completed(self) -> bool:
        return self.upload_status == UploadStatusEnum.COMPLETED.value
