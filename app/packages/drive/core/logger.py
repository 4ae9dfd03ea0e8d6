"""日志配置模块：统一控制台/文件输出格式，并在每条记录中注入请求 ID。"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Optional

from .config import get_settings

LOGGER_NAME = "app"
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class _TZFormatter(logging.Formatter):
    """按配置时区渲染时间戳，未提供 datefmt 时输出带毫秒的 ISO-8601。"""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: D401
        dt = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(_TZFormatter):
    """ANSI 彩色格式化器：根据日志级别渲染不同颜色。"""

    RESET = "\033[0m"
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }

    def __init__(
        self,
        fmt: str,
        datefmt: Optional[str] = None,
        style: str = "%",
        use_colors: Optional[bool] = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        if use_colors is None:
            use_colors = sys.stderr.isatty()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        if not color:
            return message
        return f"{color}{message}{self.RESET}"


class JsonFormatter(_TZFormatter):
    """结构化 JSON 日志，便于采集端解析。"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    """把上下文中的请求 ID 写入每条日志记录；后台任务中为 ``-``。"""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = get_request_id() or "-"
        return True


def setup_logging() -> None:
    """初始化日志系统，确保项目所有模块使用统一的输出格式与级别。"""
    settings = get_settings()
    settings.log_directory.mkdir(parents=True, exist_ok=True)

    formatter_name = "json" if settings.log_json else "standard"
    handlers = ["default", "file"]

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "()": "app.packages.drive.core.logger.ColorFormatter",
                "format": _FORMAT,
            },
            "plain": {
                "()": "app.packages.drive.core.logger._TZFormatter",
                "format": _FORMAT,
            },
            "json": {
                "()": "app.packages.drive.core.logger.JsonFormatter",
            },
        },
        "filters": {
            "request_id": {
                "()": "app.packages.drive.core.logger.RequestIdFilter",
            }
        },
        "handlers": {
            "default": {
                "level": settings.log_level,
                "class": "logging.StreamHandler",
                "formatter": formatter_name,
                "filters": ["request_id"],
            },
            "file": {
                "level": settings.log_level,
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "json" if settings.log_json else "plain",
                "filename": str(settings.log_file_path),
                "when": "midnight",
                "backupCount": 14,
                "encoding": "utf-8",
                "delay": True,
                "filters": ["request_id"],
            },
        },
        "loggers": {
            "uvicorn": {"handlers": handlers, "level": settings.log_level, "propagate": False},
            "uvicorn.error": {"handlers": handlers, "level": settings.log_level, "propagate": False},
            "uvicorn.access": {"handlers": handlers, "level": settings.log_level, "propagate": False},
            "apscheduler": {"handlers": handlers, "level": "WARNING", "propagate": False},
            "botocore": {"handlers": handlers, "level": "WARNING", "propagate": False},
            LOGGER_NAME: {"handlers": handlers, "level": settings.log_level, "propagate": False},
        },
        "root": {
            "handlers": handlers,
            "level": settings.log_level,
        },
    }
    logging.config.dictConfig(logging_config)


logger = logging.getLogger(LOGGER_NAME)


def get_logger(name: str) -> logging.Logger:
    """返回 ``app`` 下的子 logger，例如 ``app.sweeper``。"""
    return logger.getChild(name)


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()
