"""枚举定义：约束角色、上传状态与配额违规原因的可选值。"""

from enum import Enum


class UserRoleEnum(str, Enum):
    SUPER_ADMIN = "superAdmin"
    ADMIN = "admin"
    USER = "user"


class UploadStatusEnum(str, Enum):
    """文件记录的上传状态：``uploading`` 表示存储侧已开启分片会话。"""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"


class StorageTypeEnum(str, Enum):
    S3 = "S3"
    LOCAL = "LOCAL"


class QuotaReasonEnum(str, Enum):
    """配额策略违规原因。"""

    STORAGE = "storage"
    FILE_COUNT = "fileCount"
    FILE_SIZE = "fileSize"
    DAILY = "daily"
    DAILY_COUNT = "dailyCount"
    FILE_TYPE = "fileType"
    COMPANY_STORAGE = "companyStorage"
    ALLOCATION = "allocation"


class FileCategoryEnum(str, Enum):
    """按 MIME 类型归类的统计维度。"""

    IMAGES = "images"
    VIDEOS = "videos"
    PDFS = "pdfs"
    DOCUMENTS = "documents"
    OTHERS = "others"
