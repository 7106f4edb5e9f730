"""
Order Service — エラー分類

placeOrder の各フェーズは、以下のいずれか1つのカテゴリとして失敗を表面化する。
オーケストレーター自身はリトライしない。
"""


class OrderError(Exception):
    """注文処理のエラー基底クラス。HTTP 層で status_code / code に変換される。"""

    status_code = 500
    code = "order_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail}


class ValidationError(OrderError):
    """不正な注文明細。ネットワーク呼び出しの前に拒否する。"""

    status_code = 400
    code = "validation_error"


class StockUnavailable(OrderError):
    """いずれかの商品の在庫確認が失敗した。"""

    status_code = 409
    code = "stock_unavailable"

    def __init__(self, product_ids: list[int]):
        self.product_ids = sorted(product_ids)
        super().__init__(f"Stock not available for product(s): {self.product_ids}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "productIds": self.product_ids}


class PriceNotFound(OrderError):
    """参照した商品が存在しない。"""

    status_code = 404
    code = "price_not_found"

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "productIds": [self.product_id]}


class ServiceUnavailable(OrderError):
    """Oracle 呼び出しのタイムアウト・通信失敗・不正な応答。"""

    status_code = 503
    code = "service_unavailable"


class PersistenceFailure(OrderError):
    """注文トランザクションをコミットできなかった。イベントは発行されない。"""

    status_code = 500
    code = "persistence_failure"


class PublishFailure(OrderError):
    """コミット済みだがイベントをキューに積めなかった。"""

    status_code = 502
    code = "publish_failure"


class OrderNotFound(OrderError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class IdempotencyKeyReused(OrderError):
    """同じ冪等キーが別の明細の注文に使われた。既存の注文は返さない。"""

    status_code = 409
    code = "idempotency_key_reused"

    def __init__(self, idempotency_key: str, order_id: int):
        self.idempotency_key = idempotency_key
        self.order_id = order_id
        super().__init__(
            f"Idempotency key {idempotency_key!r} was already used for order {order_id} "
            "with different items"
        )


class IdempotencyConflict(Exception):
    """同じ冪等キーの注文が既にコミットされている（Ledger 内部用）。"""

    def __init__(self, idempotency_key: str):
        super().__init__(idempotency_key)
        self.idempotency_key = idempotency_key
