"""
共通 — 例外定義

Write API では HTTP ステータスに変換し、ワーカーでは
キューの再配信 (at-least-once) に委ねるためにそのまま送出する。
"""


class OrderFlowError(Exception):
    """全ドメイン例外の基底クラス"""


class ValidationError(OrderFlowError):
    """クライアント入力が不正 (400)。副作用なし。"""

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class CredentialError(OrderFlowError):
    """DB シークレットが存在しない / 壊れている。起動時エラー扱いでリトライしない。"""


class PersistenceError(OrderFlowError):
    """DB 操作の失敗。送出前にトランザクションは必ずロールバック済み。"""


class InsufficientStockError(PersistenceError):
    """厳格モードで在庫減算の条件 (stock >= quantity) を満たさなかった"""

    def __init__(self, order_id: str, product_id: str, quantity: int) -> None:
        super().__init__(
            f"Insufficient stock for order {order_id}: "
            f"product={product_id}, requested={quantity}"
        )
        self.order_id = order_id
        self.product_id = product_id
        self.quantity = quantity


class PublishError(OrderFlowError):
    """コミット後のイベント発行に失敗した"""

    def __init__(self, detail_type: str, order_id: str) -> None:
        super().__init__(f"Failed to publish {detail_type} for order {order_id}")
        self.detail_type = detail_type
        self.order_id = order_id


class TransientChannelError(OrderFlowError):
    """メッセージ処理中のハンドラ例外。ACK せず再配信に任せる。"""

    def __init__(self, queue: str, message_id: str) -> None:
        super().__init__(f"Handler failed for message {message_id} on {queue}")
        self.queue = queue
        self.message_id = message_id
