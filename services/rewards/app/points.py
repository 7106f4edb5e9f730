"""
Rewards Service — ポイント付与

注文金額に応じたポイントを rewards:user:<userId> ハッシュに
注文 ID をフィールドとして HSETNX で記録する。
残高は全フィールドの合計なので、再配信で二重に加算されることはない。
"""

import logging
from decimal import ROUND_FLOOR, Decimal

import redis.asyncio as aioredis

from services.common.events import OrderCreatedEvent

logger = logging.getLogger(__name__)


def user_key(user_id: int) -> str:
    return f"rewards:user:{user_id}"


def points_for(total: Decimal, points_per_unit: Decimal) -> int:
    return int((total * points_per_unit).to_integral_value(rounding=ROUND_FLOOR))


async def accrue_rewards(
    redis: aioredis.Redis,
    event: OrderCreatedEvent,
    points_per_unit: Decimal = Decimal("1"),
) -> bool:
    """ポイントを付与する。既に付与済みの注文なら False を返す。"""
    points = points_for(event.order.total, points_per_unit)
    created = await redis.hsetnx(user_key(event.order.user_id), str(event.order.id), points)
    if not created:
        logger.info("[REWARDS] Order %s already rewarded, skipping", event.order.id)
        return False

    logger.info(
        "[REWARDS] Added %d point(s) to user %s for order %s",
        points, event.order.user_id, event.order.id,
    )
    return True


async def get_balance(redis: aioredis.Redis, user_id: int) -> int:
    values = await redis.hvals(user_key(user_id))
    return sum(int(v) for v in values)
