import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from services.order.app.errors import PriceNotFound, ServiceUnavailable
from services.order.app.oracles import PriceOracleClient, StockOracleClient, fan_out
from services.order.app.schemas import OrderItemRequest


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_check_stock_sends_camel_case_and_parses_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "productId": 1,
            "sku": "SKU-1",
            "available": True,
            "availableStock": 10,
            "requestedQuantity": 2,
        })

    async with client_for(handler) as client:
        result = await StockOracleClient(client, "http://inventory.test/").check_stock(1, 2)

    assert seen == {
        "path": "/queries/inventory/check-stock",
        "body": {"productId": 1, "quantity": 2},
    }
    assert result.available
    assert result.available_stock == 10
    assert result.sku == "SKU-1"


async def test_check_stock_timeout_is_service_unavailable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    async with client_for(handler) as client:
        with pytest.raises(ServiceUnavailable):
            await StockOracleClient(client, "http://inventory.test").check_stock(1, 2)


async def test_check_stock_rejects_malformed_response():
    async with client_for(lambda r: httpx.Response(200, json={"productId": 1})) as client:
        with pytest.raises(ServiceUnavailable, match="invalid response"):
            await StockOracleClient(client, "http://inventory.test").check_stock(1, 2)


async def test_check_stock_rejects_answer_for_other_product():
    payload = {
        "productId": 2,
        "available": True,
        "availableStock": 1,
        "requestedQuantity": 1,
    }
    async with client_for(lambda r: httpx.Response(200, json=payload)) as client:
        with pytest.raises(ServiceUnavailable, match="expected 1"):
            await StockOracleClient(client, "http://inventory.test").check_stock(1, 1)


async def test_get_price_accepts_product_payload():
    payload = {"id": 3, "name": "Tea", "price": "12.50", "stockQuantity": 4}
    async with client_for(lambda r: httpx.Response(200, json=payload)) as client:
        lookup = await PriceOracleClient(client, "http://product.test").get_price(3)

    assert lookup.product_id == 3
    assert lookup.price == Decimal("12.50")


async def test_get_price_accepts_price_payload():
    payload = {"productId": 3, "price": 7}
    async with client_for(lambda r: httpx.Response(200, json=payload)) as client:
        lookup = await PriceOracleClient(client, "http://product.test").get_price(3)

    assert lookup.price == Decimal("7")


async def test_get_price_not_found():
    async with client_for(lambda r: httpx.Response(404)) as client:
        with pytest.raises(PriceNotFound):
            await PriceOracleClient(client, "http://product.test").get_price(3)


async def test_get_price_server_error_is_service_unavailable():
    async with client_for(lambda r: httpx.Response(502)) as client:
        with pytest.raises(ServiceUnavailable):
            await PriceOracleClient(client, "http://product.test").get_price(3)


# ── fan_out ──────────────────────────────────────

def items(*product_ids):
    return [OrderItemRequest(product_id=p, quantity=1) for p in product_ids]


async def test_fan_out_correlates_by_product_not_arrival():
    delays = {1: 0.05, 2: 0.0, 3: 0.02}
    arrival = []

    async def call(item):
        await asyncio.sleep(delays[item.product_id])
        arrival.append(item.product_id)
        return {"product_id": item.product_id, "value": item.product_id * 10}

    results = await fan_out(items(1, 2, 3), call, key=lambda r: r["product_id"])

    assert arrival == [2, 3, 1]
    assert {pid: r["value"] for pid, r in results.items()} == {1: 10, 2: 20, 3: 30}


async def test_fan_out_bounds_concurrency():
    in_flight = 0
    peak = 0

    async def call(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item

    await fan_out(items(*range(1, 11)), call, key=lambda r: r.product_id, max_concurrency=3)

    assert peak == 3


async def test_fan_out_waits_for_all_then_raises_first_failure():
    finished = []

    async def call(item):
        if item.product_id == 2:
            raise ServiceUnavailable("product 2 down")
        await asyncio.sleep(0.01)
        finished.append(item.product_id)
        return item

    with pytest.raises(ServiceUnavailable, match="product 2"):
        await fan_out(items(1, 2, 3), call, key=lambda r: r.product_id)

    assert sorted(finished) == [1, 3]


async def test_fan_out_detects_missing_answer():
    async def call(item):
        return OrderItemRequest(product_id=1, quantity=1)

    with pytest.raises(ServiceUnavailable, match="No response"):
        await fan_out(items(1, 2), call, key=lambda r: r.product_id)
