"""分布式互斥锁：Redis ``SET NX EX`` 实现，Redis 不可用时退化为进程内锁。

后台清理任务依赖该锁保证同一时刻只有一个实例在执行。
"""

from __future__ import annotations

import threading
import uuid
from typing import Optional

import redis

from app.packages.drive.core.logger import logger
from app.packages.drive.core.session import get_redis_client


class TaskLock:
    """不可重入的命名锁，``acquire`` 立即返回是否拿到锁。"""

    def __init__(self, name: str, ttl_seconds: int) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._token: Optional[str] = None
        self._local = threading.Lock()

    @property
    def key(self) -> str:
        return f"drive:lock:{self.name}"

    def acquire(self) -> bool:
        client = get_redis_client()
        if client is None:
            return self._local.acquire(blocking=False)
        token = uuid.uuid4().hex
        try:
            acquired = bool(client.set(self.key, token, nx=True, ex=self.ttl_seconds))
        except redis.RedisError as exc:
            logger.warning("Lock %s unavailable in Redis (%s), using in-process lock", self.name, exc)
            return self._local.acquire(blocking=False)
        if acquired:
            self._token = token
        return acquired

    def release(self) -> None:
        client = get_redis_client()
        token, self._token = self._token, None
        if token is None:
            if self._local.locked():
                self._local.release()
            return
        try:
            # 仅删除自己持有的锁，避免误删过期后被其他实例重新获取的锁
            if client is not None and client.get(self.key) == token:
                client.delete(self.key)
        except redis.RedisError as exc:
            logger.warning("Failed to release lock %s: %s", self.name, exc)
