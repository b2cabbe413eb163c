"""
Write API — コマンドハンドラ (注文受付)

注文と明細を 1 トランザクションで保存し、コミット後に OrderCreated を発行する。
在庫の確認はここでは行わない。後続のステージがイベントを受けて処理する。
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from ..shared.context import ServiceContext
from ..shared.errors import PersistenceError, PublishError, ValidationError
from ..shared.events import DetailType
from ..shared.models import NewOrder, Order, OrderStatus

logger = logging.getLogger(__name__)

ACCEPTED = "ACCEPTED"

INSERT_ORDER = text("""
    INSERT INTO orders (id, customer_id, status, created_at)
    VALUES (:id, :customer_id, :status, :created_at)
""").bindparams(bindparam("created_at", type_=DateTime(timezone=True)))

INSERT_ORDER_ITEM = text("""
    INSERT INTO order_items (order_id, product_id, quantity)
    VALUES (:order_id, :product_id, :quantity)
""")


@dataclass(frozen=True)
class SubmitResult:
    order_id: str
    status: str = ACCEPTED


def validate_new_order(customer_id: Any, items: Any) -> NewOrder:
    try:
        return NewOrder.model_validate({"customerId": customer_id, "items": items})
    except PydanticValidationError as exc:
        raise ValidationError(
            "Missing or invalid customerId or items",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


async def submit_order(ctx: ServiceContext, customer_id: Any, items: Any) -> SubmitResult:
    """
    注文受付コマンド

    1. 入力を検証 (不正なら ValidationError、副作用なし)
    2. 注文 ID・PENDING・現在時刻を割り当て
    3. orders と order_items を 1 トランザクションで INSERT
    4. コミット後に OrderCreated を発行

    4 が失敗しても注文はコミット済みなので成功として返す。
    イベントが出ていない PENDING の注文はリコンサイラが拾い直す。
    """
    new_order = validate_new_order(customer_id, items)
    order = Order(
        id=str(uuid.uuid4()),
        customer_id=new_order.customer_id,
        items=new_order.items,
        status=OrderStatus.PENDING,
        created_at=datetime.now(timezone.utc),
    )

    sessions = await ctx.db.get_write_handle()
    async with sessions() as session:
        try:
            await session.execute(
                INSERT_ORDER,
                {
                    "id": order.id,
                    "customer_id": order.customer_id,
                    "status": order.status.value,
                    "created_at": order.created_at,
                },
            )
            for item in order.items:
                await session.execute(
                    INSERT_ORDER_ITEM,
                    {
                        "order_id": order.id,
                        "product_id": item.product_id,
                        "quantity": item.quantity,
                    },
                )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(f"Failed to persist order {order.id}") from exc

    try:
        await ctx.events.publish(DetailType.ORDER_CREATED, order)
    except PublishError:
        logger.exception("Order %s committed but OrderCreated was not published", order.id)

    return SubmitResult(order_id=order.id)
