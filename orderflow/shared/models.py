"""
共通 — 注文モデル

状態遷移 (前進のみ。補償トランザクションは持たない):
    PENDING → STOCK_VALIDATED → INVENTORY_UPDATED → COMPLETED
    PENDING → FAILED  (在庫検証失敗)

イベントの detail には Order のスナップショットを camelCase の JSON で載せる。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    STOCK_VALIDATED = "STOCK_VALIDATED"
    INVENTORY_UPDATED = "INVENTORY_UPDATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def predecessor(self) -> "OrderStatus | None":
        """この状態へ遷移できる唯一の直前状態"""
        return _PREDECESSORS.get(self)

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.FAILED)


_PREDECESSORS = {
    OrderStatus.STOCK_VALIDATED: OrderStatus.PENDING,
    OrderStatus.FAILED: OrderStatus.PENDING,
    OrderStatus.INVENTORY_UPDATED: OrderStatus.STOCK_VALIDATED,
    OrderStatus.COMPLETED: OrderStatus.INVENTORY_UPDATED,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItem(_CamelModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, strict=True)


class NewOrder(_CamelModel):
    """注文作成リクエストの入力検証用"""
    customer_id: str = Field(min_length=1)
    items: list[OrderItem] = Field(min_length=1)


class Order(_CamelModel):
    id: str
    customer_id: str
    items: list[OrderItem]
    status: OrderStatus
    created_at: datetime

    def with_status(self, status: OrderStatus) -> "Order":
        return self.model_copy(update={"status": status})

    def to_detail(self) -> str:
        return self.model_dump_json(by_alias=True)
