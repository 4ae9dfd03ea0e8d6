"""数据模型集合：导入即完成所有表的注册。"""

from app.packages.drive.models.base import Base
from app.packages.drive.models.company import Company
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.usage import DailyUsage, TypeUsage
from app.packages.drive.models.user import User

__all__ = ["Base", "Company", "User", "FileRecord", "DailyUsage", "TypeUsage"]
