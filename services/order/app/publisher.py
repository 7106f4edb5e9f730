"""
Order Service — Event Publisher

コミット済みの注文1件につき OrderCreatedEvent を1回、ファンアウトチャネルに発行する。

発行結果は PUBLISHED / PUBLISH_FAILED の2値で返す。
コミット後に発行できなかった場合（下流の副作用が起動されない状態）を
呼び出し側が観測できるようにするため、例外では返さない。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.common import streams
from services.common.events import ORDERS_EXCHANGE, SUBSCRIBER_GROUPS, OrderCreatedEvent

from .schemas import PublishStatus

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        redis: aioredis.Redis,
        topic: str = ORDERS_EXCHANGE,
        timeout: float = 5.0,
    ):
        self.redis = redis
        self.topic = topic
        self.timeout = timeout

    async def declare_subscribers(self, groups=SUBSCRIBER_GROUPS) -> None:
        """購読キュー(コンシューマグループ)を先に作成し、発行したイベントを取りこぼさないようにする。"""
        for group in groups:
            await streams.ensure_group(self.redis, self.topic, group)

    async def publish(self, event: OrderCreatedEvent) -> PublishStatus:
        try:
            message_id = await asyncio.wait_for(
                streams.publish(self.redis, self.topic, event),
                timeout=self.timeout,
            )
        except (RedisError, asyncio.TimeoutError):
            logger.exception(
                "Failed to publish %s for order %s to %s; downstream effects were not triggered",
                event.pattern, event.order.id, self.topic,
            )
            return PublishStatus.PUBLISH_FAILED

        logger.info(
            "Published %s %s to %s as %s",
            event.pattern, event.event_id, self.topic, message_id,
        )
        return PublishStatus.PUBLISHED
