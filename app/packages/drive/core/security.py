"""安全模块：提供密码哈希、验证以及 JWT 令牌的生成/解析能力。"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt

from .config import get_settings
from .logger import logger


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """校验明文密码与已存储哈希值是否匹配。"""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_password_hash(password: str) -> str:
    """对输入密码执行 bcrypt 哈希并返回可持久化的字符串。"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(subject: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """根据传入载荷生成带有过期时间的签名 JWT。"""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = subject.copy()
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_temporary_token(subject: Dict[str, Any], *, expires_seconds: int = 600) -> str:
    """创建一个短期有效的 JWT，用于本地存储的预签名直链。

    注意：该令牌不绑定用户会话，仅用于对象级别的临时授权。
    """
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(seconds=max(int(expires_seconds or 0), 1))
    payload = subject.copy()
    payload.update({"exp": expire})
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """解析访问令牌；过期由服务端会话 TTL 控制，因此这里不校验 ``exp``。"""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False},
        )
    except JWTError as exc:  # pragma: no cover - logging side effect
        logger.warning("Failed to decode JWT: %s", exc)
        return None


def decode_and_verify_token(token: str, *, verify_exp: bool = True) -> Optional[Dict[str, Any]]:
    """解码并校验 JWT，默认校验过期时间，适用于直链签名这类需要严格过期控制的场景。"""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": verify_exp},
        )
    except JWTError as exc:  # pragma: no cover - logging side effect
        logger.warning("Failed to verify JWT: %s", exc)
        return None
