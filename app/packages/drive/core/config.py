"""配置模块：负责加载和缓存基于环境变量的应用设置。"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB


# 探测项目根目录并加载环境文件，支持通过 ENV_FILE/ENVIRONMENT 定制优先级。
def _detect_base_dir() -> Path:
    """向上遍历目录树，寻找包含 `app` 目录的项目根路径。"""
    current = Path(__file__).resolve()
    for candidate in current.parents:
        if (candidate / "app").is_dir():
            return candidate
    return current.parent


BASE_DIR = _detect_base_dir()


def _as_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_environment() -> None:
    env_file_override = os.getenv("ENV_FILE")
    if env_file_override:
        candidate = BASE_DIR / env_file_override
        if candidate.exists():
            load_dotenv(candidate, override=True, encoding="utf-8")
        return

    base_env = BASE_DIR / ".env"
    if base_env.exists():
        load_dotenv(base_env, override=False, encoding="utf-8")

    environment = os.getenv("ENVIRONMENT")
    if environment is None and _as_bool(os.getenv("DEBUG")):
        environment = "development"

    if environment:
        if environment.startswith(".env"):
            candidate_name = environment
        else:
            candidate_name = f".env.{environment}"
        candidate_path = BASE_DIR / candidate_name
        if candidate_path.exists():
            load_dotenv(candidate_path, override=True, encoding="utf-8")


_load_environment()


class Settings(BaseSettings):
    """
    封装应用运行所需的所有配置项，每个字段都可以通过环境变量重写。
    套餐额度、预签名有效期与清理周期均集中在此处，避免在业务代码中散落魔法数字。
    """

    project_name: str = Field(default="Quota Drive API", alias="PROJECT_NAME")
    api_v1_str: str = Field(default="/api/v1", alias="API_V1_STR")
    debug: bool = Field(default=False, alias="DEBUG")

    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    database_host: str = Field(default="localhost", alias="DATABASE_HOST")
    database_port: int = Field(default=5432, alias="DATABASE_PORT")
    database_user: str = Field(default="postgres", alias="DATABASE_USER")
    database_password: str = Field(default="postgres", alias="DATABASE_PASSWORD")
    database_name: str = Field(default="quota_drive", alias="DATABASE_NAME")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    jwt_secret_key: str = Field(default="changeme", alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="app.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    app_port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    # 对象存储
    storage_backend: str = Field(default="S3", alias="STORAGE_BACKEND")
    s3_bucket: str = Field(default="", alias="S3_BUCKET")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_access_key_id: Optional[str] = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[str] = Field(default=None, alias="S3_SECRET_ACCESS_KEY")
    s3_endpoint_url: Optional[str] = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_max_attempts: int = Field(default=3, alias="S3_MAX_ATTEMPTS")
    local_storage_root: str = Field(default="storage", alias="LOCAL_STORAGE_ROOT")
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")

    # 上传协议
    upload_url_ttl_seconds: int = Field(default=900, alias="UPLOAD_URL_TTL_SECONDS")
    multipart_url_ttl_seconds: int = Field(default=3600, alias="MULTIPART_URL_TTL_SECONDS")
    download_url_ttl_seconds: int = Field(default=300, alias="DOWNLOAD_URL_TTL_SECONDS")
    view_url_ttl_seconds: int = Field(default=600, alias="VIEW_URL_TTL_SECONDS")
    multipart_threshold: int = Field(default=50 * MIB, alias="MULTIPART_THRESHOLD")
    multipart_part_size: int = Field(default=5 * MIB, alias="MULTIPART_PART_SIZE")
    upload_key_folder: str = Field(default="uploads", alias="UPLOAD_KEY_FOLDER")

    # 套餐额度（默认对应免费版）
    plan_name: str = Field(default="free", alias="PLAN_NAME")
    plan_max_storage: int = Field(default=5 * GIB, alias="PLAN_MAX_STORAGE")
    plan_max_files: int = Field(default=100, alias="PLAN_MAX_FILES")
    plan_max_file_size: int = Field(default=100 * MIB, alias="PLAN_MAX_FILE_SIZE")
    plan_daily_upload_limit: int = Field(default=1 * GIB, alias="PLAN_DAILY_UPLOAD_LIMIT")
    plan_daily_upload_count: int = Field(default=50, alias="PLAN_DAILY_UPLOAD_COUNT")
    plan_allowed_types_raw: str = Field(
        default=(
            "image/jpeg,image/png,image/gif,application/pdf,video/mp4,video/quicktime,text/plain,"
            "application/msword,"
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
        ),
        alias="PLAN_ALLOWED_TYPES",
    )

    # 租户默认值
    company_default_storage: int = Field(default=5 * GIB, alias="COMPANY_DEFAULT_STORAGE")
    company_min_storage: int = Field(default=100 * MIB, alias="COMPANY_MIN_STORAGE")
    default_user_storage: int = Field(default=5 * GIB, alias="DEFAULT_USER_STORAGE")
    default_superadmin_username: str = Field(default="superadmin", alias="DEFAULT_SUPERADMIN_USERNAME")
    default_superadmin_password: str = Field(default="superadmin123", alias="DEFAULT_SUPERADMIN_PASSWORD")

    # 后台清理
    sweeper_enabled: bool = Field(default=True, alias="SWEEPER_ENABLED")
    sweeper_interval_seconds: int = Field(default=3600, alias="SWEEPER_INTERVAL_SECONDS")
    sweeper_lock_ttl_seconds: int = Field(default=1800, alias="SWEEPER_LOCK_TTL_SECONDS")
    stale_upload_hours: int = Field(default=24, alias="STALE_UPLOAD_HOURS")
    deleted_retention_days: int = Field(default=7, alias="DELETED_RETENTION_DAYS")
    daily_usage_retention_days: int = Field(default=30, alias="DAILY_USAGE_RETENTION_DAYS")
    quota_warning_interval_seconds: int = Field(default=6 * 3600, alias="QUOTA_WARNING_INTERVAL_SECONDS")

    model_config = SettingsConfigDict(extra='ignore')

    @property
    def sql_database_url(self) -> str:
        """返回数据库连接串，``DATABASE_URL`` 优先，否则拼接 PostgreSQL 连接串。"""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def redis_url(self) -> str:
        """根据当前配置生成 Redis 连接地址。"""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def log_directory(self) -> Path:
        """返回日志目录的绝对路径，支持相对路径配置。"""
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        return self.log_directory / self.log_file_name

    @property
    def local_storage_directory(self) -> Path:
        """本地对象存储根目录（仅 ``STORAGE_BACKEND=LOCAL`` 时使用）。"""
        return self._resolve_path(self.local_storage_root)

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")

    @property
    def plan_allowed_types(self) -> list[str]:
        raw = (self.plan_allowed_types_raw or "").strip()
        return [item.strip().lower() for item in raw.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量造成性能浪费。"""
    return Settings()
