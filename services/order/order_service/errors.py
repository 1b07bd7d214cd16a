"""
Order Service — 例外定義

ドメイン例外はトランザクション内で送出され、ロールバックを引き起こす。
呼び出し元から見える唯一の結果は例外そのもので、部分的な書き込みは残らない。
status_code は HTTP アダプタがそのまま使う。
"""


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(OrderServiceError):
    """注文・商品・ユーザーが存在しない"""
    status_code = 404


class ValidationError(OrderServiceError):
    """明細が空、数量が 0 以下、必須項目の欠落など"""
    status_code = 400


class InsufficientStock(OrderServiceError):
    """要求数量が在庫を超えている"""
    status_code = 409

    def __init__(self, product_id: int, product_name: str, requested: int) -> None:
        super().__init__(f"Insufficient stock for product: {product_name}")
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested


class InvalidState(OrderServiceError):
    """キャンセル済み注文の変更など、現在の状態では許されない操作"""
    status_code = 409


class ConflictError(OrderServiceError):
    """SKU・注文番号などの一意制約違反"""
    status_code = 409
