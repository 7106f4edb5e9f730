"""
Inventory Service — コマンドハンドラ (Write 側)

OrderCreated イベントを受けて在庫を引き落とす。

配信は at-least-once なので同じイベントが2回以上届くことがある。
処理済みマーカー(processed_orders)の INSERT と在庫の UPDATE を
同じトランザクションで行い、注文 ID ごとに1回だけ引き落とす。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import OrderCreatedEvent

logger = logging.getLogger(__name__)

MARK_PROCESSED = text("""
    INSERT INTO processed_orders (order_id, event_id, processed_at)
    VALUES (:order_id, :event_id, :now)
""").bindparams(bindparam("now", type_=DateTime(timezone=True)))

DECREMENT_STOCK = text("""
    UPDATE inventory
    SET available_stock = available_stock - :qty, updated_at = :now
    WHERE product_id = :product_id AND is_active = :active
    RETURNING available_stock
""").bindparams(bindparam("now", type_=DateTime(timezone=True)))


async def apply_order_created(session: AsyncSession, event: OrderCreatedEvent) -> bool:
    """
    注文の全明細分の在庫を引き落とす。

    既に処理済みの注文なら何もせず False を返す。
    """
    now = datetime.now(timezone.utc)
    try:
        async with session.begin():
            await session.execute(
                MARK_PROCESSED,
                {"order_id": event.order.id, "event_id": event.event_id, "now": now},
            )
            for item in event.order_items:
                result = await session.execute(
                    DECREMENT_STOCK,
                    {
                        "qty": item.quantity,
                        "now": now,
                        "product_id": item.product_id,
                        "active": True,
                    },
                )
                row = result.fetchone()
                if row is None:
                    logger.warning(
                        "[INVENTORY] No active inventory for product %s (order %s), not decremented",
                        item.product_id, event.order.id,
                    )
                elif row.available_stock < 0:
                    # 在庫確認と引き落としの間に他の注文が在庫を消費した
                    logger.warning(
                        "[INVENTORY] Stock for product %s went negative (%s) on order %s",
                        item.product_id, row.available_stock, event.order.id,
                    )
    except IntegrityError:
        logger.info("[INVENTORY] Order %s already processed, skipping", event.order.id)
        return False

    logger.info(
        "[INVENTORY] Decremented stock for order %s: %s",
        event.order.id, [(i.product_id, i.quantity) for i in event.order_items],
    )
    return True
