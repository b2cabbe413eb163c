"""
Read API — クエリハンドラ
"""

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import AsyncSession

SELECT_ORDER = text("""
    SELECT id, customer_id, status, created_at FROM orders WHERE id = :id
""").columns(created_at=DateTime(timezone=True))

SELECT_ORDER_ITEMS = text("""
    SELECT order_id, product_id, quantity FROM order_items
    WHERE order_id = :id
    ORDER BY id ASC
""")


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(SELECT_ORDER, {"id": order_id})
    row = result.fetchone()
    if not row:
        return None
    items = await session.execute(SELECT_ORDER_ITEMS, {"id": order_id})
    return {
        "id": row.id,
        "customerId": row.customer_id,
        "status": row.status,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "items": [
            {
                "orderId": item.order_id,
                "productId": item.product_id,
                "quantity": item.quantity,
            }
            for item in items.fetchall()
        ],
    }
