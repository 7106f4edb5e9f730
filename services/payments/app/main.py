"""
Payments Service — FastAPI エントリーポイント

orders.exchange の payments グループを購読し、注文ごとに決済をキャプチャする。
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException

from services.common.events import ORDERS_EXCHANGE, OrderCreatedEvent
from services.common.streams import StreamConsumer

from . import captures

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_EVENTS_STREAM = os.environ.get("ORDER_EVENTS_STREAM", ORDERS_EXCHANGE)
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"payments-{socket.gethostname()}")
CLAIM_IDLE_MS = int(os.environ.get("CLAIM_IDLE_MS", "60000"))

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)

    async def handle_order_created(event: OrderCreatedEvent) -> None:
        await captures.capture_payment(redis_pool, event)

    consumer = StreamConsumer(
        redis_pool,
        ORDER_EVENTS_STREAM,
        "payments",
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


app = FastAPI(title="Payments Service", lifespan=lifespan)


@app.get("/queries/payments/{order_id}")
async def query_capture(order_id: int):
    """注文のキャプチャ記録を取得"""
    capture = await captures.get_capture(redis_pool, order_id)
    if not capture:
        raise HTTPException(404, "Payment not found")
    return capture


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payments-service"}
