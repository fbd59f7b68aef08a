"""
Marketplace Service: イベント定義と発行

ドメインで発生した事実(イベント)を Redis Pub/Sub で他サービスへ通知する。
発行はコミット後に行うため、失敗しても書き込み結果は変わらない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

PRODUCT_EVENTS = "product_events"
ORDER_EVENTS = "order_events"


class ProductCreated(BaseModel):
    """商品が登録された"""
    product_id: str
    name: str
    category: str
    price: float
    stock_quantity: int
    version: int


class OrderPlaced(BaseModel):
    """注文が確定した（在庫の減算と同じトランザクションでコミット済み）"""
    order_id: str
    product_id: str
    user_id: str
    quantity: int
    product_version: int
    timestamp: datetime


class EventPublisher:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: BaseModel) -> None:
        """
        イベントを発行する。

        Redis の障害はログに残して握りつぶす。
        呼び出し元の書き込みは既にコミットされている。
        """
        event_type = type(event).__name__
        try:
            await self.redis.publish(
                channel,
                json.dumps(
                    {
                        "event_type": event_type,
                        "data": event.model_dump(mode="json"),
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s to %s", event_type, channel)
