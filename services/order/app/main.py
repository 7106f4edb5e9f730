"""
Order Service — FastAPI エントリーポイント

注文確定(placeOrder)を Command として公開し、コミット済みの注文を Query で返す。
在庫・単価は Inventory / Product Service に同期 RPC で問い合わせ、
コミット後の副作用は Redis Streams のファンアウトで各サービスに通知する。
"""

import logging
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.events import ORDERS_EXCHANGE

from . import queries
from .errors import OrderError, OrderNotFound
from .ledger import OrderLedger
from .oracles import PriceOracleClient, StockOracleClient
from .orchestrator import OrderOrchestrator
from .publisher import EventPublisher
from .schemas import OrderDetail, PlacedOrder, PlaceOrderRequest
from .tables import create_schema

DATABASE_URL = os.environ.get("DATABASE_URL", "postgresql+asyncpg://localhost/orders")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://localhost:8002")
PRODUCT_SERVICE_URL = os.environ.get("PRODUCT_SERVICE_URL", "http://localhost:8003")
ORDER_EVENTS_STREAM = os.environ.get("ORDER_EVENTS_STREAM", ORDERS_EXCHANGE)
ORACLE_TIMEOUT_SECONDS = float(os.environ.get("ORACLE_TIMEOUT_SECONDS", "5"))
ORACLE_MAX_CONCURRENCY = int(os.environ.get("ORACLE_MAX_CONCURRENCY", "8"))
PHASE_TIMEOUT_SECONDS = float(os.environ.get("PHASE_TIMEOUT_SECONDS", "10"))
PUBLISH_TIMEOUT_SECONDS = float(os.environ.get("PUBLISH_TIMEOUT_SECONDS", "5"))
AUTO_CREATE_SCHEMA = os.environ.get("AUTO_CREATE_SCHEMA", "false").lower() == "true"

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

async_session: async_sessionmaker[AsyncSession] | None = None
orchestrator: OrderOrchestrator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global async_session, orchestrator
    engine = create_async_engine(DATABASE_URL, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if AUTO_CREATE_SCHEMA:
        await create_schema(engine)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=ORACLE_TIMEOUT_SECONDS)

    publisher = EventPublisher(
        redis_pool, topic=ORDER_EVENTS_STREAM, timeout=PUBLISH_TIMEOUT_SECONDS
    )
    await publisher.declare_subscribers()

    orchestrator = OrderOrchestrator(
        StockOracleClient(http_client, INVENTORY_SERVICE_URL, ORACLE_TIMEOUT_SECONDS),
        PriceOracleClient(http_client, PRODUCT_SERVICE_URL, ORACLE_TIMEOUT_SECONDS),
        OrderLedger(async_session),
        publisher,
        max_concurrency=ORACLE_MAX_CONCURRENCY,
        phase_timeout=PHASE_TIMEOUT_SECONDS,
    )
    yield
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_orchestrator() -> OrderOrchestrator:
    return orchestrator


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders", status_code=201, response_model=PlacedOrder, response_model_by_alias=True)
async def cmd_place_order(
    req: PlaceOrderRequest,
    idempotency_key: str | None = Header(default=None),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """注文確定コマンド。コミット済みの注文を返し、下流の処理は待たない。"""
    return await orchestrator.place_order(req.user_id, req.items, idempotency_key)


@app.post("/commands/orders/{order_id}/republish", response_model=PlacedOrder, response_model_by_alias=True)
async def cmd_republish(
    order_id: int,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """OrderCreated イベントの再発行（発行失敗した注文の復旧用）"""
    return await orchestrator.republish(order_id)


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders", response_model=list[OrderDetail], response_model_by_alias=True)
async def query_orders_by_user(
    user_id: int,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """ユーザーの注文一覧"""
    async with session_factory() as session:
        return await queries.list_orders_by_user(session, user_id)


@app.get("/queries/orders/{order_id}", response_model=OrderDetail, response_model_by_alias=True)
async def query_get_order(
    order_id: int,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise OrderNotFound(order_id)
        return order


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
