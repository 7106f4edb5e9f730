"""
テスト共通フィクスチャ

- Redis: fakeredis (Streams / コンシューマグループ対応)
- DB: aiosqlite のファイル DB (テストごとに作り直す)
- Oracle: httpx.MockTransport で Inventory / Product Service を差し替える
"""

import json
from decimal import Decimal

import fakeredis
import httpx
import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.inventory.app import tables as inventory_tables
from services.order.app import tables as order_tables
from services.order.app.ledger import OrderLedger
from services.order.app.oracles import PriceOracleClient, StockOracleClient
from services.order.app.orchestrator import OrderOrchestrator
from services.order.app.publisher import EventPublisher

INVENTORY_URL = "http://inventory.test"
PRODUCT_URL = "http://product.test"


@pytest_asyncio.fixture
async def redis():
    conn = fake_aioredis.FakeRedis(decode_responses=True)
    yield conn
    await conn.flushall()
    await conn.aclose()


@pytest_asyncio.fixture
async def broken_redis():
    server = fakeredis.FakeServer()
    server.connected = False
    conn = fake_aioredis.FakeRedis(server=server, decode_responses=True)
    yield conn
    await conn.aclose()


@pytest_asyncio.fixture
async def order_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/orders.db")
    await order_tables.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def order_sessions(order_engine):
    return async_sessionmaker(order_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def inventory_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/inventory.db")
    await inventory_tables.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def inventory_sessions(inventory_engine):
    return async_sessionmaker(inventory_engine, class_=AsyncSession, expire_on_commit=False)


class FakeCatalog:
    """
    Inventory / Product Service の振る舞いを模した MockTransport ハンドラ。

    stock: productId -> 在庫数
    prices: productId -> 単価
    timeouts: タイムアウトさせる (サービス名, productId) の集合
    """

    def __init__(self, stock=None, prices=None):
        self.stock: dict[int, int] = dict(stock or {})
        self.prices: dict[int, Decimal] = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.timeouts: set[tuple[str, int]] = set()
        self.errors: set[tuple[str, int]] = set()
        self.calls: list[tuple[str, int]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "inventory.test":
            body = json.loads(request.content)
            product_id = body["productId"]
            return self._answer("stock", product_id, request, lambda: {
                "productId": product_id,
                "sku": f"SKU-{product_id}" if product_id in self.stock else "",
                "available": self.stock.get(product_id, 0) >= body["quantity"],
                "availableStock": self.stock.get(product_id, 0),
                "requestedQuantity": body["quantity"],
            })

        product_id = int(request.url.path.rsplit("/", 1)[-1])
        if product_id not in self.prices:
            self.calls.append(("price", product_id))
            return httpx.Response(404, json={"detail": "Product not found"})
        return self._answer("price", product_id, request, lambda: {
            "id": product_id,
            "name": f"Product {product_id}",
            "price": str(self.prices[product_id]),
        })

    def _answer(self, service, product_id, request, payload):
        self.calls.append((service, product_id))
        if (service, product_id) in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if (service, product_id) in self.errors:
            return httpx.Response(500, json={"detail": "boom"})
        return httpx.Response(200, json=payload())


@pytest.fixture
def catalog():
    return FakeCatalog(stock={1: 10, 2: 5}, prices={1: 100, 2: 250})


@pytest_asyncio.fixture
async def http_client(catalog):
    client = httpx.AsyncClient(transport=httpx.MockTransport(catalog))
    yield client
    await client.aclose()


@pytest.fixture
def make_orchestrator(http_client, order_sessions, redis):
    """既定の依存を使い、一部だけ差し替えたオーケストレーターを作る。"""

    def _make(session_factory=None, publisher_redis=None, **kwargs) -> OrderOrchestrator:
        return OrderOrchestrator(
            StockOracleClient(http_client, INVENTORY_URL, timeout=1.0),
            PriceOracleClient(http_client, PRODUCT_URL, timeout=1.0),
            OrderLedger(session_factory or order_sessions),
            EventPublisher(publisher_redis or redis, timeout=1.0),
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
