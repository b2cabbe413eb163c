"""
Worker — 在庫更新ステージ

StockValidated を受け取り、1 トランザクションで

  1. 注文状態を STOCK_VALIDATED → INVENTORY_UPDATED に進める (compare-and-set)
  2. 明細ごとに在庫を減算する
  3. コミット

コミット後にだけ InventoryUpdated を発行する。途中で失敗した場合は全体を
ロールバックし (在庫の部分的な減算は残らない)、例外をキューに返す。

状態更新を先に行うのは、同じメッセージの重複配信で在庫を二重に減らさないため。
1 が 0 行なら減算せずにロールバックする。

在庫減算はデフォルトでは無条件 (在庫検証の結果を信用する)。検証から減算までの
間に他の注文が在庫を消費すると在庫がマイナスになり得る。STRICT_INVENTORY_CHECK を
有効にすると stock >= quantity の条件付き減算になり、満たさない場合は
InsufficientStockError でロールバックする。
"""

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.context import ServiceContext
from ..shared.errors import InsufficientStockError, PersistenceError
from ..shared.events import DetailType
from ..shared.models import Order, OrderStatus

logger = logging.getLogger(__name__)

ADVANCE_STATUS = text("""
    UPDATE orders
    SET status = :new_status
    WHERE id = :id AND status = :expected_status
""")

SELECT_STATUS = text("SELECT status FROM orders WHERE id = :id")

DECREMENT_STOCK = text("""
    UPDATE inventory
    SET stock = stock - :quantity
    WHERE product_id = :product_id
""")

DECREMENT_STOCK_IF_AVAILABLE = text("""
    UPDATE inventory
    SET stock = stock - :quantity
    WHERE product_id = :product_id AND stock >= :quantity
""")


async def _current_status(session: AsyncSession, order_id: str) -> OrderStatus | None:
    result = await session.execute(SELECT_STATUS, {"id": order_id})
    status = result.scalar_one_or_none()
    return OrderStatus(status) if status else None


async def _apply(session: AsyncSession, order: Order, strict: bool) -> OrderStatus | None:
    """トランザクション内の処理。進めた場合は None、進めなかった場合は現在の状態を返す。"""
    result = await session.execute(
        ADVANCE_STATUS,
        {
            "id": order.id,
            "new_status": OrderStatus.INVENTORY_UPDATED.value,
            "expected_status": OrderStatus.STOCK_VALIDATED.value,
        },
    )
    if result.rowcount == 0:
        await session.rollback()
        return await _current_status(session, order.id)

    statement = DECREMENT_STOCK_IF_AVAILABLE if strict else DECREMENT_STOCK
    for item in order.items:
        result = await session.execute(
            statement, {"product_id": item.product_id, "quantity": item.quantity}
        )
        if strict and result.rowcount == 0:
            raise InsufficientStockError(order.id, item.product_id, item.quantity)

    await session.commit()
    return None


async def handle_stock_validated(ctx: ServiceContext, order: Order) -> OrderStatus | None:
    """在庫更新。InventoryUpdated を発行した場合はその状態を返す。"""
    strict = ctx.settings.strict_inventory_check
    writer = await ctx.db.get_write_handle()
    async with writer() as session:
        try:
            current = await _apply(session, order, strict)
        except InsufficientStockError:
            await session.rollback()
            raise
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(f"Inventory update failed for order {order.id}") from exc

    if current is None:
        logger.info("Inventory updated for order %s", order.id)
    elif current is OrderStatus.INVENTORY_UPDATED:
        # 前回の試行はコミット済みで発行だけ失敗している。イベントだけ出し直す。
        logger.info("Order %s already INVENTORY_UPDATED, re-publishing", order.id)
    else:
        logger.warning(
            "Order %s is %s, expected %s; skipping",
            order.id,
            current.value if current else "missing",
            OrderStatus.STOCK_VALIDATED.value,
        )
        return None

    updated = order.with_status(OrderStatus.INVENTORY_UPDATED)
    await ctx.events.publish(DetailType.INVENTORY_UPDATED, updated)
    return updated.status
