"""
Rewards Service — FastAPI エントリーポイント

orders.exchange の rewards グループを購読し、注文ごとにポイントを付与する。
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI

from services.common.events import ORDERS_EXCHANGE, OrderCreatedEvent
from services.common.streams import StreamConsumer

from . import points

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_EVENTS_STREAM = os.environ.get("ORDER_EVENTS_STREAM", ORDERS_EXCHANGE)
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"rewards-{socket.gethostname()}")
CLAIM_IDLE_MS = int(os.environ.get("CLAIM_IDLE_MS", "60000"))
REWARD_POINTS_PER_UNIT = Decimal(os.environ.get("REWARD_POINTS_PER_UNIT", "1"))

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)

    async def handle_order_created(event: OrderCreatedEvent) -> None:
        await points.accrue_rewards(redis_pool, event, REWARD_POINTS_PER_UNIT)

    consumer = StreamConsumer(
        redis_pool,
        ORDER_EVENTS_STREAM,
        "rewards",
        CONSUMER_NAME,
        handle_order_created,
        claim_idle_ms=CLAIM_IDLE_MS,
    )
    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(consumer.run(shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()


app = FastAPI(title="Rewards Service", lifespan=lifespan)


@app.get("/queries/rewards/{user_id}")
async def query_balance(user_id: int):
    """ユーザーのポイント残高"""
    return {"userId": user_id, "points": await points.get_balance(redis_pool, user_id)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "rewards-service"}
