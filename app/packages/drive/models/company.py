"""公司（租户）模型：保存公司级存储总量与已用/已分配容量。"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import expression

from app.packages.drive.models.base import Base, TimestampMixin


class Company(TimestampMixin, Base):
    """``used_storage`` 超出 ``total_storage`` 只做检测（见公司概览），不做拦截。"""

    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    total_storage: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_storage: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    allocated_to_users: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    user_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=expression.true()
    )

    members = relationship("User", back_populates="company", lazy="selectin")

    @property
    def available_storage(self) -> int:
        return max(0, self.total_storage - self.used_storage)

    @property
    def over_allocated_by(self) -> int:
        return max(0, self.allocated_to_users - self.total_storage)

    @property
    def is_over_allocated(self) -> bool:
        return self.allocated_to_users > self.total_storage

    @property
    def over_used_by(self) -> int:
        return max(0, self.used_storage - self.total_storage)

    @property
    def is_over_used(self) -> bool:
        """总容量被下调到已用量以下时成立，此时新上传会被公司层拒绝。"""
        return self.used_storage > self.total_storage
