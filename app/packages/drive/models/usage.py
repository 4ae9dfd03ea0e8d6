"""用量统计模型：按自然日的上传/下载统计与按文件类别的统计。"""

from datetime import date

from sqlalchemy import BigInteger, Date, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.models.base import Base, TimestampMixin


class DailyUsage(TimestampMixin, Base):
    __tablename__ = "daily_usages"
    __table_args__ = (UniqueConstraint("user_id", "usage_date", name="uq_daily_usages_user_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    upload_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    upload_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    download_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class TypeUsage(TimestampMixin, Base):
    __tablename__ = "type_usages"
    __table_args__ = (UniqueConstraint("user_id", "category", name="uq_type_usages_user_category"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
