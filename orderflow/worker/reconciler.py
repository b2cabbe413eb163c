"""
Worker — リコンサイラ

コミット後のイベント発行に失敗すると、注文は DB 上で PENDING / STOCK_VALIDATED の
まま止まり、後続のステージが起動されない。一定時間以上経っても進んでいない
注文を拾い、対応するイベントを発行し直す。

各ステージは compare-and-set で状態を更新するため、まだ処理中の注文に
イベントを重複して出しても状態は壊れない。

再発行のたびに orders.reconcile_attempts を 1 増やし、RECONCILE_MAX_ATTEMPTS に
達した注文は以後拾わない。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.context import ServiceContext
from ..shared.errors import PersistenceError, PublishError
from ..shared.events import DetailType
from ..shared.models import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)

# 止まっている状態 → その状態から次のステージを起動するイベント
RESUME_EVENTS = {
    OrderStatus.PENDING: DetailType.ORDER_CREATED,
    OrderStatus.STOCK_VALIDATED: DetailType.STOCK_VALIDATED,
}

SELECT_STALE_ORDERS = (
    text("""
        SELECT id, customer_id, status, created_at, reconcile_attempts
        FROM orders
        WHERE status IN (:pending, :stock_validated)
          AND created_at < :cutoff
          AND reconcile_attempts < :max_attempts
        ORDER BY created_at ASC
        LIMIT :limit
    """)
    .bindparams(bindparam("cutoff", type_=DateTime(timezone=True)))
    .columns(created_at=DateTime(timezone=True))
)

SELECT_ITEMS = text("""
    SELECT product_id, quantity FROM order_items
    WHERE order_id = :order_id
    ORDER BY id ASC
""")

RECORD_ATTEMPT = text("""
    UPDATE orders SET reconcile_attempts = reconcile_attempts + 1
    WHERE id = :id
""")
async def find_stale_orders(
    session: AsyncSession,
    cutoff: datetime,
    max_attempts: int,
    limit: int = 500,
) -> list[tuple[Order, int]]:
    """再発行の対象になる注文と、これまでの再発行回数を古い順に返す。"""
    result = await session.execute(
        SELECT_STALE_ORDERS,
        {
            "pending": OrderStatus.PENDING.value,
            "stock_validated": OrderStatus.STOCK_VALIDATED.value,
            "cutoff": cutoff,
            "max_attempts": max_attempts,
            "limit": limit,
        },
    )
    stale = []
    for row in result.fetchall():
        items = await session.execute(SELECT_ITEMS, {"order_id": row.id})
        order = Order(
            id=row.id,
            customer_id=row.customer_id,
            items=[
                OrderItem(product_id=i.product_id, quantity=i.quantity)
                for i in items.fetchall()
            ],
            status=OrderStatus(row.status),
            created_at=row.created_at,
        )
        stale.append((order, row.reconcile_attempts))
    return stale


async def record_attempts(ctx: ServiceContext, order_ids: list[str]) -> None:
    writer = await ctx.db.get_write_handle()
    async with writer() as session:
        try:
            for order_id in order_ids:
                await session.execute(RECORD_ATTEMPT, {"id": order_id})
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError("Failed to record reconcile attempts") from exc


async def reconcile_once(ctx: ServiceContext, now: datetime | None = None) -> int:
    """止まっている注文のイベントを再発行し、発行できた件数を返す。"""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=ctx.settings.reconcile_after_seconds)
    max_attempts = ctx.settings.reconcile_max_attempts

    reader = await ctx.db.get_read_handle()
    async with reader() as session:
        stale = await find_stale_orders(session, cutoff, max_attempts)

    republished: list[str] = []
    for order, attempts in stale:
        detail_type = RESUME_EVENTS[order.status]
        try:
            await ctx.events.publish(detail_type, order)
        except PublishError:
            logger.exception("Re-publish of %s failed for order %s", detail_type.value, order.id)
            continue
        republished.append(order.id)
        if attempts + 1 >= max_attempts:
            logger.error(
                "Order %s is still %s after %d re-publishes; no further reconciliation",
                order.id, order.status.value, attempts + 1,
            )

    if republished:
        await record_attempts(ctx, republished)
    if stale:
        logger.info("Reconciled %d of %d stale orders", len(republished), len(stale))
    return len(republished)


async def run_reconciler(ctx: ServiceContext, shutdown_event: asyncio.Event) -> None:
    interval = ctx.settings.reconcile_interval_seconds
    while not shutdown_event.is_set():
        try:
            await reconcile_once(ctx)
        except Exception:
            logger.exception("Reconciliation sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
