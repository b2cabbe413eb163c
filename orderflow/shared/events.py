"""
共通 — イベント定義

ステージ間の通信はイベントだけで行う。イベントは過去形で命名し、
detail には注文スナップショットを載せる。
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .models import Order

EVENT_SOURCE = "com.retailer.orders"


class DetailType(str, Enum):
    ORDER_CREATED = "OrderCreated"
    STOCK_VALIDATED = "StockValidated"
    STOCK_VALIDATION_FAILED = "StockValidationFailed"
    INVENTORY_UPDATED = "InventoryUpdated"


class EventEnvelope(BaseModel):
    """ストリームエントリ 1 件分のイベント"""
    model_config = ConfigDict(populate_by_name=True)

    source: str = EVENT_SOURCE
    detail_type: DetailType = Field(alias="detail-type")
    detail: Order

    @classmethod
    def for_order(cls, detail_type: DetailType, order: Order) -> "EventEnvelope":
        return cls(detail_type=detail_type, detail=order)

    def to_fields(self) -> dict[str, str]:
        """XADD に渡すフィールド (値はすべて文字列)"""
        return {
            "source": self.source,
            "detail-type": self.detail_type.value,
            "detail": self.detail.to_detail(),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "EventEnvelope":
        return cls(
            source=fields.get("source", EVENT_SOURCE),
            detail_type=fields["detail-type"],
            detail=Order.model_validate_json(fields["detail"]),
        )
