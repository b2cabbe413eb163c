"""
共通 — テーブル定義

本番のスキーマはマイグレーションで管理する。ここでは開発環境と
テスト用に同じ構造を SQLAlchemy Core で宣言しておく。
在庫 (inventory) は事前に投入されている前提で、コアからは作成しない。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("customer_id", String(255), nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # リコンサイラがイベントを再発行した回数
    Column("reconcile_attempts", Integer, nullable=False, server_default="0"),
)

order_items = Table(
    "order_items",
    metadata,
    # 明細を受付時の順序で読み出すための連番
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
)

# stock >= 0 の CHECK 制約は付けない。減算時の扱いは STRICT_INVENTORY_CHECK で決める。
inventory = Table(
    "inventory",
    metadata,
    Column("product_id", String(255), primary_key=True),
    Column("stock", Integer, nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
