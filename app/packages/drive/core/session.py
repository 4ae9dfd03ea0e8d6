"""会话管理：使用 Redis 或内存后端实现滑动过期的访问会话。"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.logger import logger


class SessionBackend:
    """会话后端基类，定义滑动过期操作的接口。"""

    def create_session(self, user_id: int, ttl_seconds: int) -> str:  # pragma: no cover - interface definition
        raise NotImplementedError

    def touch_session(self, session_id: str, user_id: int, ttl_seconds: int) -> bool:  # pragma: no cover
        raise NotImplementedError

    def delete_session(self, session_id: str) -> None:  # pragma: no cover
        raise NotImplementedError


class RedisSessionBackend(SessionBackend):
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def create_session(self, user_id: int, ttl_seconds: int) -> str:
        session_id = uuid.uuid4().hex
        key = self._build_key(session_id)
        self._client.hset(key, mapping={"user_id": str(user_id)})
        self._client.expire(key, ttl_seconds)
        return session_id

    def touch_session(self, session_id: str, user_id: int, ttl_seconds: int) -> bool:
        key = self._build_key(session_id)
        stored_user_id = self._client.hget(key, "user_id")
        if stored_user_id is None or stored_user_id != str(user_id):
            return False
        self._client.expire(key, ttl_seconds)
        return True

    def delete_session(self, session_id: str) -> None:
        self._client.delete(self._build_key(session_id))

    @staticmethod
    def _build_key(session_id: str) -> str:
        return f"drive:session:{session_id}"


class InMemorySessionBackend(SessionBackend):
    """内存后端用于测试或缺少 Redis 时的回退实现。"""

    def __init__(self) -> None:
        self._store: dict[str, tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def create_session(self, user_id: int, ttl_seconds: int) -> str:
        session_id = uuid.uuid4().hex
        with self._lock:
            self._store[session_id] = (user_id, self._expiry(ttl_seconds))
        return session_id

    def touch_session(self, session_id: str, user_id: int, ttl_seconds: int) -> bool:
        with self._lock:
            record = self._store.get(session_id)
            if record is None:
                return False
            stored_user_id, current_expiry = record
            if stored_user_id != user_id or current_expiry < datetime.now(timezone.utc):
                self._store.pop(session_id, None)
                return False
            self._store[session_id] = (stored_user_id, self._expiry(ttl_seconds))
            return True

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._store.pop(session_id, None)

    @staticmethod
    def _expiry(ttl_seconds: int) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)


_redis_client: Optional[redis.Redis] = None
_redis_checked = False
_backend: Optional[SessionBackend] = None


def get_redis_client() -> Optional[redis.Redis]:
    """返回可用的 Redis 客户端；首次连接失败后整个进程都使用内存回退。"""
    global _redis_client, _redis_checked
    if _redis_checked:
        return _redis_client
    settings = get_settings()
    try:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True, socket_connect_timeout=1)
        client.ping()
        _redis_client = client
        logger.info("Connected to Redis at %s", settings.redis_url)
    except redis.RedisError as exc:
        logger.warning("Redis unavailable (%s), falling back to in-process state", exc)
        _redis_client = None
    _redis_checked = True
    return _redis_client


def _get_backend() -> SessionBackend:
    global _backend
    if _backend is None:
        client = get_redis_client()
        _backend = RedisSessionBackend(client) if client is not None else InMemorySessionBackend()
    return _backend


def create_session(user_id: int, ttl_seconds: int) -> str:
    """创建会话并返回会话 ID。"""
    return _get_backend().create_session(user_id, ttl_seconds)


def touch_session(session_id: str, user_id: int, ttl_seconds: int) -> bool:
    """刷新会话 TTL，若会话不存在或用户不匹配则返回 ``False``。"""
    return _get_backend().touch_session(session_id, user_id, ttl_seconds)


def delete_session(session_id: str) -> None:
    _get_backend().delete_session(session_id)
