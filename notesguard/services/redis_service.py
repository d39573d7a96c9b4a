"""Redis 连接服务。"""

from __future__ import annotations

import asyncio
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from notesguard.config import REDIS_URL

_redis_client: Any = None
_redis_lock = asyncio.Lock()


async def get_redis(redis_url: str | None = None) -> Any:
    """获取进程级 Redis 客户端（懒加载单例，首次调用决定连接地址）。"""

    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _redis_lock:
        if _redis_client is None:
            _redis_client = Redis.from_url(redis_url or REDIS_URL, encoding="utf-8", decode_responses=True)
    return _redis_client


async def redis_available() -> bool:
    """探测 Redis 是否可达，连接失败时释放客户端以便下次重建。"""

    redis = await get_redis()
    try:
        return bool(await redis.ping())
    except (OSError, RedisError):
        await close_redis()
        return False


async def close_redis() -> None:
    """关闭 Redis 客户端连接。"""

    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
