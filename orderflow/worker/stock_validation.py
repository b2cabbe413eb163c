"""
Worker — 在庫検証ステージ

OrderCreated を受け取り、明細ごとに reader から在庫を確認する。

  - 入力順に確認し、最初に不足した明細で打ち切る (不足の一覧は作らない)
  - 在庫行が存在しない商品は在庫 0 とみなす
  - 全明細が足りれば STOCK_VALIDATED、そうでなければ FAILED

状態の更新は「現在の状態が PENDING か、すでに同じ結果」の場合だけ行う
(compare-and-set)。再配信で同じ注文を何度処理しても状態が後退しない。
"""

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.context import ServiceContext
from ..shared.errors import PersistenceError
from ..shared.events import DetailType
from ..shared.models import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)

SELECT_STOCK = text("SELECT stock FROM inventory WHERE product_id = :product_id")

UPDATE_STATUS = text("""
    UPDATE orders
    SET status = :new_status
    WHERE id = :id AND status IN (:expected_status, :new_status)
""")


async def check_stock(session: AsyncSession, items: list[OrderItem]) -> bool:
    for item in items:
        result = await session.execute(SELECT_STOCK, {"product_id": item.product_id})
        stock = result.scalar_one_or_none() or 0
        if stock < item.quantity:
            logger.info(
                "Insufficient stock: product=%s requested=%d available=%d",
                item.product_id, item.quantity, stock,
            )
            return False
    return True


async def handle_order_created(ctx: ServiceContext, order: Order) -> OrderStatus | None:
    """
    在庫検証

    1. reader で在庫を確認
    2. writer で注文状態を 1 文で更新 (トランザクション不要)
    3. 結果に応じて StockValidated / StockValidationFailed を 1 件発行

    DB 更新・発行の失敗は送出し、キューの再配信に任せる。
    更新対象が無かった場合 (注文が存在しない・すでに先へ進んでいる) は何も発行しない。
    """
    reader = await ctx.db.get_read_handle()
    try:
        async with reader() as session:
            available = await check_stock(session, order.items)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Stock lookup failed for order {order.id}") from exc

    new_status = OrderStatus.STOCK_VALIDATED if available else OrderStatus.FAILED

    writer = await ctx.db.get_write_handle()
    async with writer() as session:
        try:
            result = await session.execute(
                UPDATE_STATUS,
                {
                    "id": order.id,
                    "new_status": new_status.value,
                    "expected_status": new_status.predecessor.value,
                },
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(f"Status update failed for order {order.id}") from exc

    if result.rowcount == 0:
        logger.warning(
            "Order %s not updated to %s (missing or already advanced)",
            order.id, new_status.value,
        )
        return None

    detail_type = (
        DetailType.STOCK_VALIDATED if available else DetailType.STOCK_VALIDATION_FAILED
    )
    await ctx.events.publish(detail_type, order.with_status(new_status))
    return new_status
