"""
Order Orchestrator — 注文確定フロー

コレオグラフィ型 Saga の起点:
  Order Service は自分のローカルトランザクションだけを実行し、
  在庫の引き落とし・決済・ポイント付与はイベントを受けた各サービスが
  独立に行う。分散トランザクションも補償トランザクションも持たない。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. 全明細の在庫確認を並列に実行 (Stock Oracle)            │
  │     └─ 1つでも在庫なし → StockUnavailable (何も書かない)  │
  │  2. 全明細の単価取得を並列に実行 (Price Oracle)            │
  │  3. 明細金額・合計金額を計算                               │
  │  4. Order + OrderItem を1トランザクションで保存            │
  │  5. コミット後に OrderCreatedEvent を1回発行               │
  │  6. コミット済みの注文を同期的に返す                       │
  └─────────────────────────────────────────────────────────┘

在庫確認は一時的な読み取りで、引き当て(予約)はしない。
確認時点と下流の引き落とし時点の間の整合性は結果整合。
"""

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from decimal import Decimal
from typing import TypeVar

from pydantic import ValidationError as SchemaError

from services.common.events import OrderCreatedEvent

from .errors import (
    IdempotencyConflict,
    IdempotencyKeyReused,
    OrderNotFound,
    PersistenceFailure,
    PublishFailure,
    ServiceUnavailable,
    StockUnavailable,
    ValidationError,
)
from .ledger import OrderLedger
from .oracles import PriceOracleClient, StockOracleClient, fan_out
from .publisher import EventPublisher
from .schemas import (
    NewOrder,
    OrderDetail,
    OrderItemRequest,
    PlacedOrder,
    PlaceOrderRequest,
    PricedItem,
    PublishStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderOrchestrator:
    """注文確定のオーケストレーター。呼び出し間で可変な状態を共有しない。"""

    def __init__(
        self,
        stock_oracle: StockOracleClient,
        price_oracle: PriceOracleClient,
        ledger: OrderLedger,
        publisher: EventPublisher,
        *,
        max_concurrency: int = 8,
        phase_timeout: float = 10.0,
    ):
        self.stock_oracle = stock_oracle
        self.price_oracle = price_oracle
        self.ledger = ledger
        self.publisher = publisher
        self.max_concurrency = max_concurrency
        self.phase_timeout = phase_timeout

    async def place_order(
        self,
        user_id: int,
        items: Sequence[OrderItemRequest | dict],
        idempotency_key: str | None = None,
    ) -> PlacedOrder:
        """
        注文を確定する。

        失敗はすべて OrderError のサブクラスとして送出し、その場合 Order は
        保存されずイベントも発行されない。リトライは呼び出し側の責任で、
        安全にリトライできるのは idempotency_key を渡した場合だけ。
        """
        request = self._validate(user_id, items)
        logger.info(
            "[ORDERS] Place order user=%s items=%s",
            user_id, [(i.product_id, i.quantity) for i in request.items],
        )

        if idempotency_key:
            existing = await self.ledger.find_by_idempotency_key(user_id, idempotency_key)
            if existing:
                logger.info(
                    "[ORDERS] Idempotency key %s already committed as order %s",
                    idempotency_key, existing.order.id,
                )
                return self._replayed(existing, request, idempotency_key)

        # ── Step 1: 在庫確認 ──────────────────────
        stock = await self._phase(
            "stock check",
            fan_out(
                request.items,
                lambda i: self.stock_oracle.check_stock(i.product_id, i.quantity),
                key=lambda r: r.product_id,
                max_concurrency=self.max_concurrency,
            ),
        )
        logger.info("[ORDERS] Stock check results %s", list(stock.values()))

        # ── Step 2: 在庫なしなら何もせず失敗 ──────
        unavailable = [pid for pid, result in stock.items() if not result.available]
        if unavailable:
            logger.error("[ORDERS] Stock not available user=%s products=%s", user_id, unavailable)
            raise StockUnavailable(unavailable)

        # ── Step 3: 単価取得と金額計算 ────────────
        prices = await self._phase(
            "price lookup",
            fan_out(
                request.items,
                lambda i: self.price_oracle.get_price(i.product_id),
                key=lambda r: r.product_id,
                max_concurrency=self.max_concurrency,
            ),
        )
        priced = [PricedItem.from_lookup(item, prices[item.product_id]) for item in request.items]
        total = sum((p.line_total for p in priced), Decimal("0"))

        # ── Step 4: Order + OrderItem を保存 ──────
        try:
            committed = await self.ledger.persist(
                NewOrder(user_id=user_id, total=total, idempotency_key=idempotency_key),
                priced,
            )
        except IdempotencyConflict:
            # 同じキーの並行リクエストが先にコミットした
            existing = await self.ledger.find_by_idempotency_key(user_id, idempotency_key)
            if existing is None:
                raise PersistenceFailure("Idempotent order vanished after conflict")
            return self._replayed(existing, request, idempotency_key)

        # ── Step 5: コミット後にイベントを発行 ────
        status = await self.publisher.publish(
            OrderCreatedEvent.for_order(committed.order, committed.order_items)
        )

        # ── Step 6: 下流の処理を待たずに返す ──────
        return PlacedOrder(
            order=committed.order,
            order_items=committed.order_items,
            publish_status=status,
        )

    async def republish(self, order_id: int) -> PlacedOrder:
        """
        コミット済みの注文のイベントを Ledger から組み立て直して再発行する。

        発行に失敗した注文の下流処理を起動し直すための運用手段。
        各コンシューマは event_id で重複を除外するので、二重発行しても安全。
        """
        detail = await self.ledger.get_order(order_id)
        if detail is None:
            raise OrderNotFound(order_id)

        status = await self.publisher.publish(
            OrderCreatedEvent.for_order(detail.order, detail.order_items)
        )
        if status is not PublishStatus.PUBLISHED:
            raise PublishFailure(f"Failed to publish order_created for order {order_id}")
        return PlacedOrder(
            order=detail.order,
            order_items=detail.order_items,
            publish_status=status,
        )

    def _validate(self, user_id: int, items) -> PlaceOrderRequest:
        try:
            return PlaceOrderRequest.model_validate({"user_id": user_id, "items": list(items)})
        except (SchemaError, TypeError) as e:
            raise ValidationError(f"Invalid order: {e}") from e

    async def _phase(self, name: str, awaitable: Awaitable[T]) -> T:
        """1フェーズ分の並列呼び出しを待つ。フェーズ全体のタイムアウトで打ち切る。"""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.phase_timeout)
        except asyncio.TimeoutError as e:
            logger.error("[ORDERS] %s timed out after %ss", name, self.phase_timeout)
            raise ServiceUnavailable(f"{name} timed out after {self.phase_timeout}s") from e

    @staticmethod
    def _replayed(
        detail: OrderDetail, request: PlaceOrderRequest, idempotency_key: str
    ) -> PlacedOrder:
        """
        冪等キーが一致したコミット済みの注文を返す。

        明細 (productId, quantity) が今回のリクエストと異なる場合は、
        キーの使い回しとして IdempotencyKeyReused を送出する。
        """
        committed = {(i.product_id, i.quantity) for i in detail.order_items}
        requested = {(i.product_id, i.quantity) for i in request.items}
        if committed != requested:
            logger.error(
                "[ORDERS] Idempotency key %s reused with different items (order %s)",
                idempotency_key, detail.order.id,
            )
            raise IdempotencyKeyReused(idempotency_key, detail.order.id)
        return PlacedOrder(
            order=detail.order,
            order_items=detail.order_items,
            publish_status=PublishStatus.NOT_ATTEMPTED,
            replayed=True,
        )
