"""
Pytest configuration and shared fixtures for orderflow tests.

Provides an in-memory SQLite database (aiosqlite + StaticPool), a recording
event bus in place of Redis, and a ServiceContext wired to both.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event, func, insert, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from orderflow.shared.config import Settings
from orderflow.shared.context import ServiceContext
from orderflow.shared.db import DatabaseGateway
from orderflow.shared.errors import PublishError
from orderflow.shared.events import DetailType
from orderflow.shared.models import Order
from orderflow.shared.schema import create_schema, inventory, order_items, orders

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeEventBus:
    """Records published events instead of writing to Redis streams."""

    def __init__(self) -> None:
        self.published: list[tuple[DetailType, Order]] = []
        self.failures_remaining = 0

    def fail_next(self, times: int = 1) -> None:
        self.failures_remaining = times

    async def publish(self, detail_type: DetailType, order: Order) -> None:
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise PublishError(detail_type.value, order.id)
        self.published.append((detail_type, order))

    def of_type(self, detail_type: DetailType) -> list[Order]:
        return [order for dt, order in self.published if dt is detail_type]


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=TEST_DATABASE_URL, reconcile_after_seconds=60)


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def bus() -> FakeEventBus:
    return FakeEventBus()


@pytest.fixture
def ctx(settings: Settings, engine: AsyncEngine, bus: FakeEventBus) -> ServiceContext:
    gateway = DatabaseGateway(settings, engine_factory=lambda url, **kwargs: engine)
    return ServiceContext(settings=settings, db=gateway, events=bus)


# ── Helpers ──────────────────────────────────────────────────────────


async def seed_inventory(engine: AsyncEngine, stock: dict[str, int]) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            insert(inventory),
            [{"product_id": pid, "stock": qty} for pid, qty in stock.items()],
        )


async def seed_order(engine: AsyncEngine, order: Order) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            insert(orders).values(
                id=order.id,
                customer_id=order.customer_id,
                status=order.status.value,
                created_at=order.created_at,
            )
        )
        await conn.execute(
            insert(order_items),
            [
                {"order_id": order.id, "product_id": i.product_id, "quantity": i.quantity}
                for i in order.items
            ],
        )


async def stock_levels(engine: AsyncEngine) -> dict[str, int]:
    async with engine.connect() as conn:
        rows = (await conn.execute(select(inventory.c.product_id, inventory.c.stock))).all()
    return {row.product_id: row.stock for row in rows}


async def order_status(engine: AsyncEngine, order_id: str) -> str | None:
    async with engine.connect() as conn:
        return (
            await conn.execute(select(orders.c.status).where(orders.c.id == order_id))
        ).scalar_one_or_none()


async def row_counts(engine: AsyncEngine) -> tuple[int, int]:
    async with engine.connect() as conn:
        order_count = (await conn.execute(select(func.count()).select_from(orders))).scalar_one()
        item_count = (
            await conn.execute(select(func.count()).select_from(order_items))
        ).scalar_one()
    return order_count, item_count


def fail_statement(engine: AsyncEngine, prefix: str, skip: int = 0) -> None:
    """Make the (skip + 1)-th statement starting with ``prefix`` raise OperationalError."""
    seen = {"count": 0}

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def _fail(conn, cursor, statement, parameters, context, executemany):
        if statement.strip().startswith(prefix):
            seen["count"] += 1
            if seen["count"] == skip + 1:
                raise OperationalError(statement, parameters, Exception("induced failure"))
