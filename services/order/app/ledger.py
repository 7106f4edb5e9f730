"""
Order Service — Order Ledger

Order と OrderItem を1つのトランザクションで書き込む。
読み手からは「全行がある」か「1行もない」かのどちらかしか見えない。

トランザクションは書き込みステップだけを囲む。Oracle 呼び出しが
すべて終わってから開くので、他サービスへの往復の間にロックを持たない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import queries
from .errors import IdempotencyConflict, PersistenceFailure
from .schemas import NewOrder, Order, OrderDetail, OrderItem, OrderStatus, PricedItem

logger = logging.getLogger(__name__)

INSERT_ORDER = text("""
    INSERT INTO orders
        (user_id, status, total, idempotency_key, created_at, updated_at)
    VALUES
        (:user_id, :status, :total, :idempotency_key, :now, :now)
    RETURNING id
""").bindparams(
    bindparam("total", type_=Numeric(12, 2)),
    bindparam("now", type_=DateTime(timezone=True)),
)

INSERT_ORDER_ITEM = text("""
    INSERT INTO order_items
        (order_id, product_id, quantity, price)
    VALUES
        (:order_id, :product_id, :quantity, :price)
    RETURNING id
""").bindparams(bindparam("price", type_=Numeric(12, 2)))


class OrderLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def persist(self, order: NewOrder, items: list[PricedItem]) -> OrderDetail:
        """
        注文ヘッダと全明細を1トランザクションで INSERT し、コミット済みの行を返す。

        失敗時はロールバックされ PersistenceFailure を送出する。
        同じユーザー・同じ冪等キーの注文が既にある場合は IdempotencyConflict を送出する。
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        INSERT_ORDER,
                        {
                            "user_id": order.user_id,
                            "status": OrderStatus.PENDING.value,
                            "total": order.total,
                            "idempotency_key": order.idempotency_key,
                            "now": now,
                        },
                    )
                    order_id = result.scalar_one()

                    order_items = []
                    for item in items:
                        result = await session.execute(
                            INSERT_ORDER_ITEM,
                            {
                                "order_id": order_id,
                                "product_id": item.product_id,
                                "quantity": item.quantity,
                                "price": item.line_total,
                            },
                        )
                        order_items.append(
                            OrderItem(
                                id=result.scalar_one(),
                                order_id=order_id,
                                product_id=item.product_id,
                                quantity=item.quantity,
                                price=item.line_total,
                            )
                        )
        except IntegrityError as e:
            if order.idempotency_key and await self.find_by_idempotency_key(
                order.user_id, order.idempotency_key
            ):
                raise IdempotencyConflict(order.idempotency_key) from e
            logger.exception("Order transaction violated a constraint")
            raise PersistenceFailure("Failed to save order and order items") from e
        except SQLAlchemyError as e:
            logger.exception("Order transaction failed")
            raise PersistenceFailure("Failed to save order and order items") from e

        logger.info("Committed order %s with %d item(s)", order_id, len(order_items))
        return OrderDetail(
            order=Order(
                id=order_id,
                user_id=order.user_id,
                status=OrderStatus.PENDING,
                total=order.total,
                created_at=now,
                updated_at=now,
            ),
            order_items=order_items,
        )

    async def find_by_idempotency_key(self, user_id: int, key: str) -> OrderDetail | None:
        try:
            async with self.session_factory() as session:
                return await queries.get_order_by_idempotency_key(session, user_id, key)
        except SQLAlchemyError as e:
            raise PersistenceFailure("Failed to look up order by idempotency key") from e

    async def get_order(self, order_id: int) -> OrderDetail | None:
        try:
            async with self.session_factory() as session:
                return await queries.get_order(session, order_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load order {order_id}") from e
