"""
Tests for the inventory update stage (StockValidated consumer).

Tests: decrement + status in one transaction, all-or-nothing on failure,
duplicate delivery, loose vs strict decrement
"""
from datetime import datetime, timezone

import pytest

from conftest import fail_statement, order_status, seed_inventory, seed_order, stock_levels
from orderflow.shared.errors import InsufficientStockError, PersistenceError
from orderflow.shared.events import DetailType
from orderflow.shared.models import Order, OrderItem, OrderStatus
from orderflow.worker.inventory_update import handle_stock_validated


def validated_order(*items: tuple[str, int]) -> Order:
    return Order(
        id="order-1",
        customer_id="cust-1",
        items=[OrderItem(product_id=p, quantity=q) for p, q in items],
        status=OrderStatus.STOCK_VALIDATED,
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def strict(settings):
    settings.strict_inventory_check = True
    return settings


class TestInventoryUpdate:
    """Happy path and redelivery."""

    @pytest.mark.asyncio
    async def test_decrements_stock_and_advances_status(self, ctx, engine, bus):
        order = validated_order(("prod-1", 1), ("prod-2", 2))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 5, "prod-2": 5})

        result = await handle_stock_validated(ctx, order)

        assert result is OrderStatus.INVENTORY_UPDATED
        assert await stock_levels(engine) == {"prod-1": 4, "prod-2": 3}
        assert await order_status(engine, order.id) == "INVENTORY_UPDATED"
        [(detail_type, published)] = bus.published
        assert detail_type is DetailType.INVENTORY_UPDATED
        assert published.status is OrderStatus.INVENTORY_UPDATED

    @pytest.mark.asyncio
    async def test_duplicate_delivery_does_not_decrement_twice(self, ctx, engine, bus):
        order = validated_order(("prod-1", 2))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 5})

        await handle_stock_validated(ctx, order)
        again = await handle_stock_validated(ctx, order)

        assert again is OrderStatus.INVENTORY_UPDATED
        assert await stock_levels(engine) == {"prod-1": 3}
        assert len(bus.of_type(DetailType.INVENTORY_UPDATED)) == 2

    @pytest.mark.asyncio
    async def test_order_not_validated_is_skipped(self, ctx, engine, bus):
        order = validated_order(("prod-1", 1))
        await seed_order(engine, order.with_status(OrderStatus.FAILED))
        await seed_inventory(engine, {"prod-1": 5})

        assert await handle_stock_validated(ctx, order) is None
        assert await stock_levels(engine) == {"prod-1": 5}
        assert await order_status(engine, order.id) == "FAILED"
        assert bus.published == []


class TestAllOrNothing:
    """A failure anywhere in the transaction leaves stock and status untouched."""

    @pytest.mark.asyncio
    async def test_failure_on_second_decrement_rolls_back(self, ctx, engine, bus):
        order = validated_order(("prod-1", 1), ("prod-2", 2))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 5, "prod-2": 5})
        fail_statement(engine, "UPDATE inventory", skip=1)

        with pytest.raises(PersistenceError):
            await handle_stock_validated(ctx, order)

        assert await stock_levels(engine) == {"prod-1": 5, "prod-2": 5}
        assert await order_status(engine, order.id) == "STOCK_VALIDATED"
        assert bus.published == []

    @pytest.mark.asyncio
    async def test_retry_after_failure_applies_once(self, ctx, engine, bus):
        order = validated_order(("prod-1", 1), ("prod-2", 2))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 5, "prod-2": 5})
        fail_statement(engine, "UPDATE inventory", skip=1)

        with pytest.raises(PersistenceError):
            await handle_stock_validated(ctx, order)
        await handle_stock_validated(ctx, order)

        assert await stock_levels(engine) == {"prod-1": 4, "prod-2": 3}


class TestDecrementPolicy:
    """Loose (default) vs strict sufficiency handling at decrement time."""

    @pytest.mark.asyncio
    async def test_loose_mode_can_drive_stock_negative(self, ctx, engine):
        order = validated_order(("prod-1", 3))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 1})

        assert await handle_stock_validated(ctx, order) is OrderStatus.INVENTORY_UPDATED
        assert await stock_levels(engine) == {"prod-1": -2}

    @pytest.mark.asyncio
    async def test_strict_mode_rolls_back_on_shortfall(self, strict, ctx, engine, bus):
        order = validated_order(("prod-1", 1), ("prod-2", 3))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 5, "prod-2": 1})

        with pytest.raises(InsufficientStockError) as excinfo:
            await handle_stock_validated(ctx, order)

        assert excinfo.value.product_id == "prod-2"
        assert await stock_levels(engine) == {"prod-1": 5, "prod-2": 1}
        assert await order_status(engine, order.id) == "STOCK_VALIDATED"
        assert bus.published == []

    @pytest.mark.asyncio
    async def test_strict_mode_decrements_when_available(self, strict, ctx, engine):
        order = validated_order(("prod-1", 2))
        await seed_order(engine, order)
        await seed_inventory(engine, {"prod-1": 2})

        assert await handle_stock_validated(ctx, order) is OrderStatus.INVENTORY_UPDATED
        assert await stock_levels(engine) == {"prod-1": 0}
