"""
Inventory Service — OrderCreated サブスクライバー

orders.exchange の inventory グループを購読し、在庫を引き落とす。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.events import OrderCreatedEvent
from services.common.streams import StreamConsumer

from . import commands

logger = logging.getLogger(__name__)

GROUP = "inventory"


def make_handler(async_session_factory: async_sessionmaker[AsyncSession]):
    async def handle_order_created(event: OrderCreatedEvent) -> None:
        logger.info("[INVENTORY] Received event for order %s", event.order.id)
        async with async_session_factory() as session:
            await commands.apply_order_created(session, event)

    return handle_order_created


async def run_subscriber(
    redis_url: str,
    stream: str,
    consumer_name: str,
    async_session_factory: async_sessionmaker[AsyncSession],
    shutdown_event: asyncio.Event,
    claim_idle_ms: int | None = 60_000,
) -> None:
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    consumer = StreamConsumer(
        redis_conn,
        stream,
        GROUP,
        consumer_name,
        make_handler(async_session_factory),
        claim_idle_ms=claim_idle_ms,
    )
    try:
        await consumer.run(shutdown_event)
    finally:
        await redis_conn.aclose()
