"""
共有イベント定義 — OrderCreated

Order Service が発行し、Inventory / Payments / Rewards の各サービスが
それぞれ独立に購読するイベントのスキーマ。

イベントは過去形で命名し、不変(immutable)として扱う。
ワイヤ形式は camelCase（例: userId, orderItems）。
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ファンアウトチャネル(Redis Stream)と購読グループ
ORDERS_EXCHANGE = "orders.exchange"
ORDER_CREATED_EVENT = "order_created"
SUBSCRIBER_GROUPS = ("inventory", "payments", "rewards")


class EventModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class EventOrder(EventModel):
    id: int
    user_id: int
    total: Decimal
    created_at: datetime
    updated_at: datetime


class EventOrderItem(EventModel):
    product_id: int
    quantity: int = Field(gt=0)
    price: Decimal


class OrderCreatedEvent(EventModel):
    """注文が作成された（コミット済みの Order + OrderItem のスナップショット）"""

    pattern: Literal["order_created"] = ORDER_CREATED_EVENT
    event_id: str
    order: EventOrder
    order_items: list[EventOrderItem]

    @classmethod
    def for_order(cls, order, order_items) -> "OrderCreatedEvent":
        """コミット済みの注文からイベントを組み立てる。event_id は注文 ID から決まる。"""
        return cls(
            event_id=event_id_for(order.id),
            order=EventOrder(
                id=order.id,
                user_id=order.user_id,
                total=order.total,
                created_at=order.created_at,
                updated_at=order.updated_at,
            ),
            order_items=[
                EventOrderItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price=item.price,
                )
                for item in order_items
            ],
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "OrderCreatedEvent":
        return cls.model_validate_json(raw)


def event_id_for(order_id: int) -> str:
    """冪等キー。同じ注文の再配信・再発行では必ず同じ値になる。"""
    return f"order-{order_id}"
