"""
Order Service — リクエスト / レスポンス / RPC スキーマ

サービス境界を越えるペイロードはすべてここで型付けし、
受信時に検証する。ワイヤ形式は camelCase。
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 注文リクエスト ───────────────────────────────

class OrderItemRequest(WireModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class PlaceOrderRequest(WireModel):
    user_id: int = Field(gt=0)
    items: list[OrderItemRequest] = Field(min_length=1)

    @field_validator("items")
    @classmethod
    def _unique_products(cls, items: list[OrderItemRequest]) -> list[OrderItemRequest]:
        # 結果は productId で突き合わせるため、同じ商品は1行にまとめてもらう
        seen: set[int] = set()
        duplicates: set[int] = set()
        for item in items:
            if item.product_id in seen:
                duplicates.add(item.product_id)
            seen.add(item.product_id)
        if duplicates:
            raise ValueError(f"duplicate productId(s): {sorted(duplicates)}")
        return items


# ── Oracle RPC ───────────────────────────────────

class StockCheckRequest(WireModel):
    product_id: int
    quantity: int


class StockCheckResult(WireModel):
    product_id: int
    sku: str = ""
    available: bool
    available_stock: int
    requested_quantity: int


class PriceLookup(WireModel):
    """Product Service の商品レスポンスのうち、価格計算に使う部分だけ。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    product_id: int = Field(validation_alias=AliasChoices("productId", "id"))
    price: Decimal = Field(ge=0)


class PricedItem(WireModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @classmethod
    def from_lookup(cls, item: OrderItemRequest, lookup: PriceLookup) -> "PricedItem":
        # 明細金額は保存する列と同じ精度 (Numeric(12, 2)) に丸めてから合計する
        return cls(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=lookup.price,
            line_total=(lookup.price * item.quantity).quantize(CENT, rounding=ROUND_HALF_UP),
        )


# ── 注文 (Ledger の行) ───────────────────────────

class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELED = "canceled"


class Order(WireModel):
    id: int
    user_id: int
    status: OrderStatus = OrderStatus.PENDING
    total: Decimal
    created_at: datetime
    updated_at: datetime


class OrderItem(WireModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    price: Decimal


class NewOrder(WireModel):
    """Ledger に書き込む前の注文ヘッダ。"""

    user_id: int
    total: Decimal
    idempotency_key: str | None = None


class OrderDetail(WireModel):
    order: Order
    order_items: list[OrderItem]


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"
    NOT_ATTEMPTED = "not_attempted"


class PlacedOrder(OrderDetail):
    """placeOrder の結果。コミット済みの Order + OrderItem とイベント発行結果。"""

    publish_status: PublishStatus
    replayed: bool = False
