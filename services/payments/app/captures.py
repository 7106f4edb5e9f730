"""
Payments Service — 決済の確定(キャプチャ)

OrderCreated を受けて注文金額をキャプチャする。
キャプチャ記録は payments:captures ハッシュに注文 ID をフィールドとして
HSETNX で書き込むので、同じイベントが再配信されても1回しか記録されない。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from services.common.events import OrderCreatedEvent

logger = logging.getLogger(__name__)

CAPTURES_KEY = "payments:captures"


async def capture_payment(redis: aioredis.Redis, event: OrderCreatedEvent) -> bool:
    """決済をキャプチャする。既にキャプチャ済みの注文なら False を返す。"""
    record = {
        "orderId": event.order.id,
        "userId": event.order.user_id,
        "amount": str(event.order.total),
        "eventId": event.event_id,
        "capturedAt": datetime.now(timezone.utc).isoformat(),
    }
    created = await redis.hsetnx(CAPTURES_KEY, str(event.order.id), json.dumps(record))
    if not created:
        logger.info("[PAYMENTS] Order %s already captured, skipping", event.order.id)
        return False

    logger.info(
        "[PAYMENTS] Captured %s for order %s (user %s)",
        event.order.total, event.order.id, event.order.user_id,
    )
    return True


async def get_capture(redis: aioredis.Redis, order_id: int) -> dict | None:
    raw = await redis.hget(CAPTURES_KEY, str(order_id))
    return json.loads(raw) if raw else None
