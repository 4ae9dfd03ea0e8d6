"""用户模型：角色、所属公司与个人存储配额。"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import expression

from app.packages.drive.core.enums import UserRoleEnum
from app.packages.drive.models.base import Base, TimestampMixin


class User(TimestampMixin, Base):
    """普通用户满足 ``storage_used <= storage_allocated``；
    管理员满足 ``storage_used + allocated_to_users <= storage_allocated``。
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRoleEnum.USER.value)
    company_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("companies.id"), nullable=True, index=True
    )
    added_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    allocated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    storage_allocated: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    storage_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    allocated_to_users: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=expression.true()
    )

    company = relationship("Company", back_populates="members", lazy="joined")

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRoleEnum.SUPER_ADMIN.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRoleEnum.ADMIN.value
