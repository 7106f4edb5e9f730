"""
Inventory Service — FastAPI エントリーポイント

- Stock Oracle: Order Service からの在庫確認 RPC に答える (Query)
- OrderCreated の購読: バックグラウンドで在庫を引き落とす (Command)

┌──────────────┐  check-stock (RPC)   ┌───────────────────┐
│ Order Service │ ───────────────────▶ │ Inventory Service │
│              │  orders.exchange     │                   │
│              │ ── Redis Streams ──▶ │  (group: inventory)│
└──────────────┘                      └───────────────────┘
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.events import ORDERS_EXCHANGE

from . import queries
from .subscriber import run_subscriber
from .tables import create_schema

DATABASE_URL = os.environ.get("DATABASE_URL", "postgresql+asyncpg://localhost/inventory")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_EVENTS_STREAM = os.environ.get("ORDER_EVENTS_STREAM", ORDERS_EXCHANGE)
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"inventory-{socket.gethostname()}")
CLAIM_IDLE_MS = int(os.environ.get("CLAIM_IDLE_MS", "60000"))
AUTO_CREATE_SCHEMA = os.environ.get("AUTO_CREATE_SCHEMA", "false").lower() == "true"

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

engine = None
async_session: async_sessionmaker[AsyncSession] | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に OrderCreated のサブスクライバをバックグラウンドタスクとして開始する。"""
    global engine, async_session
    engine = create_async_engine(DATABASE_URL, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if AUTO_CREATE_SCHEMA:
        await create_schema(engine)

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            REDIS_URL, ORDER_EVENTS_STREAM, CONSUMER_NAME,
            async_session, shutdown_event, CLAIM_IDLE_MS,
        )
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


class CheckStockRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: int
    quantity: int = Field(gt=0)


# ── Query Endpoints (Stock Oracle) ───────────────

@app.post("/queries/inventory/check-stock")
async def query_check_stock(req: CheckStockRequest):
    """在庫確認（Order Service から呼ばれる）"""
    async with async_session() as session:
        return await queries.check_stock(session, req.product_id, req.quantity)


@app.get("/queries/inventory/{product_id}")
async def query_get_stock(product_id: int):
    """商品の現在の在庫数"""
    async with async_session() as session:
        stock = await queries.get_stock(session, product_id)
    if stock is None:
        raise HTTPException(status_code=404, detail="Inventory not found")
    return stock


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
