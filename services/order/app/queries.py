"""
Order Service — クエリハンドラ (Read 側)

コミット済みの注文を読み出す。Ledger の冪等キー検索と
ユーザー別の注文一覧 API から使われる。
"""

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .schemas import Order, OrderDetail, OrderItem

_ORDER_COLUMNS = {
    "total": Numeric(12, 2),
    "created_at": DateTime(timezone=True),
    "updated_at": DateTime(timezone=True),
}

SELECT_ORDER_BY_ID = text("""
    SELECT id, user_id, status, total, created_at, updated_at
    FROM orders
    WHERE id = :id
""").columns(**_ORDER_COLUMNS)

SELECT_ORDER_BY_KEY = text("""
    SELECT id, user_id, status, total, created_at, updated_at
    FROM orders
    WHERE user_id = :user_id AND idempotency_key = :key
""").columns(**_ORDER_COLUMNS)

SELECT_ORDERS_BY_USER = text("""
    SELECT id, user_id, status, total, created_at, updated_at
    FROM orders
    WHERE user_id = :user_id
    ORDER BY created_at DESC, id DESC
""").columns(**_ORDER_COLUMNS)

SELECT_ITEMS = text("""
    SELECT id, order_id, product_id, quantity, price
    FROM order_items
    WHERE order_id IN :order_ids
    ORDER BY id ASC
""").bindparams(bindparam("order_ids", expanding=True)).columns(price=Numeric(12, 2))


def _order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        status=row.status,
        total=row.total,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _item(row) -> OrderItem:
    return OrderItem(
        id=row.id,
        order_id=row.order_id,
        product_id=row.product_id,
        quantity=row.quantity,
        price=row.price,
    )


async def _with_items(session: AsyncSession, orders: list[Order]) -> list[OrderDetail]:
    if not orders:
        return []
    result = await session.execute(SELECT_ITEMS, {"order_ids": [o.id for o in orders]})
    items: dict[int, list[OrderItem]] = {o.id: [] for o in orders}
    for row in result.fetchall():
        items[row.order_id].append(_item(row))
    return [OrderDetail(order=o, order_items=items[o.id]) for o in orders]


async def get_order(session: AsyncSession, order_id: int) -> OrderDetail | None:
    """注文 ID で注文と明細を取得する。"""
    result = await session.execute(SELECT_ORDER_BY_ID, {"id": order_id})
    row = result.fetchone()
    if not row:
        return None
    return (await _with_items(session, [_order(row)]))[0]


async def get_order_by_idempotency_key(
    session: AsyncSession, user_id: int, key: str
) -> OrderDetail | None:
    result = await session.execute(SELECT_ORDER_BY_KEY, {"user_id": user_id, "key": key})
    row = result.fetchone()
    if not row:
        return None
    return (await _with_items(session, [_order(row)]))[0]


async def list_orders_by_user(session: AsyncSession, user_id: int) -> list[OrderDetail]:
    """ユーザーの注文一覧を新しい順に取得する。"""
    result = await session.execute(SELECT_ORDERS_BY_USER, {"user_id": user_id})
    return await _with_items(session, [_order(row) for row in result.fetchall()])
