"""
缓存与发布订阅集成

所有操作都是尽力而为：失败只记录日志，不向调用方传播。
"""
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis


logger = logging.getLogger(__name__)


class CacheService:
    """Redis 缓存；未配置 REDIS_URL 时退化为进程内字典"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        default_ttl: Optional[int] = 3600,
        clock: Callable[[], float] = None
    ):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.clock = clock or time.monotonic
        self.redis: Optional[redis.Redis] = None
        # 键 -> (值, 过期时间)，过期时间为 None 表示不过期
        self.memory_cache: Dict[str, Tuple[Any, Optional[float]]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self.redis is not None else "memory"

    async def startup(self):
        """初始化缓存连接"""
        if not self.redis_url:
            logger.info("Using in-memory cache (REDIS_URL not set)")
            return

        client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5
        )
        try:
            await client.ping()
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis connection failed, using in-memory cache: {e}")
            await client.aclose()
            return

        self.redis = client
        logger.info("Redis cache initialized")

    async def shutdown(self):
        """关闭缓存连接"""
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis cache connection closed")
        self.memory_cache.clear()

    async def get(self, key: str) -> Optional[Any]:
        """获取缓存值"""
        try:
            if self.redis is not None:
                value = await self.redis.get(key)
                return json.loads(value) if value is not None else None
            return self._memory_get(key)
        except (redis.RedisError, OSError, ValueError) as e:
            logger.error(f"Cache GET failed for '{key}': {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """设置缓存值"""
        ttl = self.default_ttl if ttl is None else ttl
        try:
            if self.redis is not None:
                serialized = json.dumps(value, default=str)
                if ttl:
                    await self.redis.setex(key, ttl, serialized)
                else:
                    await self.redis.set(key, serialized)
            else:
                self._purge_expired()
                expires_at = self.clock() + ttl if ttl else None
                self.memory_cache[key] = (value, expires_at)
            return True
        except (redis.RedisError, OSError, TypeError, ValueError) as e:
            logger.error(f"Cache SET failed for '{key}': {e}")
            return False

    async def delete(self, key: str) -> bool:
        """删除缓存值"""
        try:
            if self.redis is not None:
                return bool(await self.redis.delete(key))
            entry = self.memory_cache.pop(key, None)
            return entry is not None and (entry[1] is None or entry[1] > self.clock())
        except (redis.RedisError, OSError) as e:
            logger.error(f"Cache DEL failed for '{key}': {e}")
            return False

    async def publish(self, channel: str, message: Any) -> bool:
        """发布消息；内存模式下没有订阅者"""
        try:
            if self.redis is not None:
                await self.redis.publish(channel, json.dumps(message, default=str))
            else:
                logger.debug(f"Published to '{channel}' (in-memory, no subscribers)")
            return True
        except (redis.RedisError, OSError, TypeError, ValueError) as e:
            logger.error(f"Cache PUBLISH failed for '{channel}': {e}")
            return False

    def _memory_get(self, key: str) -> Optional[Any]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self.memory_cache[key]
            return None
        return value

    def _purge_expired(self):
        """清理内存模式下已过期的键"""
        now = self.clock()
        expired = [
            key for key, (_, expires_at) in self.memory_cache.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self.memory_cache[key]
