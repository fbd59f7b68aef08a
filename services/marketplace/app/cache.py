"""
Marketplace Service: 商品一覧キャッシュ

商品一覧の JSON を Redis に TTL 付きで保存する。
キャッシュはあくまで補助で、障害時はストアから読み直す。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ALL_PRODUCTS_KEY = "products:all"


def cache_key(category: str | None) -> str:
    if category:
        return f"products:cat:{category}"
    return ALL_PRODUCTS_KEY


class ProductListCache:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 60) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def get(self, category: str | None) -> list[dict] | None:
        key = cache_key(category)
        try:
            cached = await self.redis.get(key)
        except RedisError:
            logger.warning("Cache read failed for key %s", key, exc_info=True)
            return None
        if cached is None:
            return None
        logger.debug("Cache hit for key %s", key)
        return json.loads(cached)

    async def set(self, category: str | None, products: list[dict]) -> None:
        key = cache_key(category)
        try:
            await self.redis.setex(key, self.ttl_seconds, json.dumps(products, default=str))
        except RedisError:
            logger.warning("Cache write failed for key %s", key, exc_info=True)

    async def invalidate(self, category: str) -> None:
        """全件キーと該当カテゴリのキーを削除する。"""
        keys = [ALL_PRODUCTS_KEY, cache_key(category)]
        try:
            await self.redis.delete(*keys)
        except RedisError:
            logger.warning("Cache invalidation failed for keys %s", keys, exc_info=True)
