"""常量定义：集中存放状态码与鉴权相关的固定值。"""

HTTP_STATUS_OK = 200
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_UNAUTHORIZED = 401
HTTP_STATUS_FORBIDDEN = 403
HTTP_STATUS_CONFLICT = 409

ACCESS_TOKEN_TYPE = "bearer"

# 临时直链令牌的用途标识
LOCAL_OBJECT_PUT_PURPOSE = "local_object_put"
LOCAL_OBJECT_PART_PURPOSE = "local_object_part"
LOCAL_OBJECT_GET_PURPOSE = "local_object_get"

# 配额预警阈值（百分比）
STORAGE_WARNING_PERCENT = 80
STORAGE_CRITICAL_PERCENT = 95
FILES_WARNING_PERCENT = 90
DAILY_WARNING_PERCENT = 85

# 每个用户保留的每日用量条目数
DAILY_USAGE_MAX_ENTRIES = 30

# S3 单次分片上传的分片上限
MAX_MULTIPART_PARTS = 10000
