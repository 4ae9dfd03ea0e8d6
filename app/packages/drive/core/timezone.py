"""时区工具方法：数据库统一存储 UTC，展示与按日统计时使用配置时区。"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from zoneinfo import ZoneInfo

from app.packages.drive.core.config import get_settings


def get_timezone() -> ZoneInfo:
    return get_settings().timezone_info


def now() -> datetime:
    """返回当前时区的时间。"""
    return datetime.now(get_timezone())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    """按配置时区计算的自然日，用于每日用量统计。"""
    return now().date()


def to_local(value: Optional[datetime]) -> Optional[datetime]:
    """将 ``datetime`` 转换为配置时区；无时区对象按 UTC 解释（SQLite 读回的值不带时区）。"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(get_timezone())


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """将时间格式化为 ``YYYY-MM-DD HH:MM:SS`` 字符串。"""
    localized = to_local(value)
    if localized is None:
        return None
    return localized.strftime("%Y-%m-%d %H:%M:%S")
