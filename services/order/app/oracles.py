"""
Order Service — Oracle クライアント

注文時点の正となるデータを同期 RPC で問い合わせる:
  - Stock Oracle (Inventory Service): 商品・数量ごとの在庫有無
  - Price Oracle (Product Service): 商品の単価

どちらも注入された httpx.AsyncClient を使い、呼び出しごとにタイムアウトを持つ。
自動リトライはしない。タイムアウト・通信失敗は ServiceUnavailable になる。
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import httpx
from pydantic import ValidationError as SchemaError

from .errors import PriceNotFound, ServiceUnavailable
from .schemas import OrderItemRequest, PriceLookup, StockCheckRequest, StockCheckResult


R = TypeVar("R")


class StockOracleClient:
    """Inventory Service の在庫確認 RPC クライアント"""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def check_stock(self, product_id: int, quantity: int) -> StockCheckResult:
        request = StockCheckRequest(product_id=product_id, quantity=quantity)
        try:
            resp = await self.client.post(
                f"{self.base_url}/queries/inventory/check-stock",
                json=request.model_dump(by_alias=True),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            result = StockCheckResult.model_validate(resp.json())
        except httpx.HTTPError as e:
            raise ServiceUnavailable(
                f"Inventory service failed for product {product_id}: {e!r}"
            ) from e
        except (SchemaError, ValueError) as e:
            raise ServiceUnavailable(
                f"Inventory service returned an invalid response for product {product_id}"
            ) from e

        if result.product_id != product_id:
            raise ServiceUnavailable(
                f"Inventory service answered for product {result.product_id}, "
                f"expected {product_id}"
            )
        return result


class PriceOracleClient:
    """Product Service の単価取得 RPC クライアント"""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_price(self, product_id: int) -> PriceLookup:
        try:
            resp = await self.client.get(
                f"{self.base_url}/queries/products/{product_id}",
                timeout=self.timeout,
            )
            if resp.status_code == 404:
                raise PriceNotFound(product_id)
            resp.raise_for_status()
            lookup = PriceLookup.model_validate(resp.json())
        except httpx.HTTPError as e:
            raise ServiceUnavailable(
                f"Product service failed for product {product_id}: {e!r}"
            ) from e
        except (SchemaError, ValueError) as e:
            raise ServiceUnavailable(
                f"Product service returned an invalid response for product {product_id}"
            ) from e

        if lookup.product_id != product_id:
            raise ServiceUnavailable(
                f"Product service answered for product {lookup.product_id}, "
                f"expected {product_id}"
            )
        return lookup


async def fan_out(
    items: Iterable[OrderItemRequest],
    call: Callable[[OrderItemRequest], Awaitable[R]],
    key: Callable[[R], int],
    max_concurrency: int = 8,
) -> dict[int, R]:
    """
    明細ごとに1回ずつ call を並列実行し、結果を productId で引けるようにして返す。

    同時実行数は max_concurrency に制限する。すべての呼び出しが戻るまで待ち、
    1つでも失敗していれば（明細順で最初の）例外を送出する。
    """
    items = list(items)
    semaphore = asyncio.Semaphore(max_concurrency)

    async def _call(item: OrderItemRequest) -> R:
        async with semaphore:
            return await call(item)

    results = await asyncio.gather(*(_call(i) for i in items), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result

    by_product = {key(result): result for result in results}
    missing = {item.product_id for item in items} - by_product.keys()
    if missing:
        raise ServiceUnavailable(f"No response for product(s): {sorted(missing)}")
    return by_product
