"""
Inventory Service — クエリハンドラ (Read 側)

Order Service から同期 RPC で呼ばれる在庫確認。
読み取りのみで、在庫の引き当て(予約)はしない。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def check_stock(session: AsyncSession, product_id: int, quantity: int) -> dict:
    """
    在庫確認。商品の在庫レコードがなければ available=False として返す。
    """
    result = await session.execute(
        text("""
            SELECT sku, available_stock
            FROM inventory
            WHERE product_id = :product_id AND is_active = :active
        """),
        {"product_id": product_id, "active": True},
    )
    row = result.fetchone()
    if not row:
        return {
            "productId": product_id,
            "sku": "",
            "available": False,
            "availableStock": 0,
            "requestedQuantity": quantity,
        }

    return {
        "productId": product_id,
        "sku": row.sku,
        "available": row.available_stock >= quantity,
        "availableStock": row.available_stock,
        "requestedQuantity": quantity,
    }


async def get_stock(session: AsyncSession, product_id: int) -> dict | None:
    """現在の在庫レコード。引き落としで負になった在庫もそのまま返す。"""
    result = await session.execute(
        text("""
            SELECT sku, available_stock, is_active
            FROM inventory
            WHERE product_id = :product_id
        """),
        {"product_id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "productId": product_id,
        "sku": row.sku,
        "availableStock": row.available_stock,
        "isActive": bool(row.is_active),
    }
