"""Unit tests for resting orders and the order-management sweeps."""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from autotrader.core.models import AutoTrade, OrderSide, OrderStatus, PriceType, TradeRequest
from autotrader.execution.order_manager import OrderManager, is_triggered

from tests.conftest import PORTFOLIO_ID


@pytest.fixture
def manager(pipeline):
    return OrderManager(pipeline)


def request(side=OrderSide.BUY, quantity="10"):
    return TradeRequest(
        portfolio_id=PORTFOLIO_ID, symbol="AAPL", side=side, quantity=Decimal(quantity)
    )


def resting(side, price_type, trigger):
    return AutoTrade(
        portfolio_id=PORTFOLIO_ID,
        symbol="AAPL",
        side=side,
        quantity=Decimal("1"),
        price_type=price_type,
        trigger_price=Decimal(trigger),
    )


class TestTriggers:
    """Test limit/stop trigger conditions."""

    @pytest.mark.parametrize("side,price_type,trigger,price,expected", [
        (OrderSide.BUY, PriceType.LIMIT, "50", "49", True),
        (OrderSide.BUY, PriceType.LIMIT, "50", "51", False),
        (OrderSide.SELL, PriceType.LIMIT, "50", "50", True),
        (OrderSide.SELL, PriceType.LIMIT, "50", "49", False),
        (OrderSide.BUY, PriceType.STOP, "50", "51", True),
        (OrderSide.BUY, PriceType.STOP, "50", "49", False),
        (OrderSide.SELL, PriceType.STOP, "50", "49", True),
        (OrderSide.SELL, PriceType.STOP, "50", "51", False),
    ])
    def test_is_triggered(self, side, price_type, trigger, price, expected):
        assert is_triggered(resting(side, price_type, trigger), Decimal(price)) is expected

    def test_no_trigger_price_never_triggers(self):
        order = AutoTrade(
            portfolio_id=PORTFOLIO_ID, symbol="AAPL", side=OrderSide.BUY,
            quantity=Decimal("1"), price_type=PriceType.LIMIT,
        )
        assert not is_triggered(order, Decimal("1"))


class TestPlaceOrder:
    @pytest.mark.asyncio
    async def test_market_order_executes_immediately(self, manager):
        order = await manager.place_order(request())
        assert order.status == OrderStatus.EXECUTED
        assert manager.resting_orders() == []

    @pytest.mark.asyncio
    async def test_limit_order_rests_with_default_expiry(self, manager):
        order = await manager.place_order(
            request(), price_type=PriceType.LIMIT, limit_price=Decimal("45")
        )

        assert order.status == OrderStatus.PENDING
        assert order.trigger_price == Decimal("45")
        assert order.expires_at > datetime.utcnow() + timedelta(hours=23)
        assert manager.resting_orders() == [order]

    @pytest.mark.asyncio
    async def test_limit_order_requires_price(self, manager):
        with pytest.raises(ValueError):
            await manager.place_order(request(), price_type=PriceType.STOP)

    @pytest.mark.asyncio
    async def test_cancel_resting_order(self, manager, test_database):
        order = await manager.place_order(
            request(), price_type=PriceType.LIMIT, limit_price=Decimal("45")
        )
        assert await manager.cancel_order(order.id)
        assert (await test_database.get_order(order.id)).status == OrderStatus.CANCELLED
        assert not await manager.cancel_order(order.id)


class TestSweeps:
    """Test the fill, expiry and cleanup sweeps."""

    @pytest.mark.asyncio
    async def test_process_orders_fills_triggered_limit(self, manager, market_data, broker):
        order = await manager.place_order(
            request(), price_type=PriceType.LIMIT, limit_price=Decimal("45")
        )

        assert await manager.process_orders() == 0
        assert order.status == OrderStatus.PENDING

        market_data.set_price("AAPL", Decimal("44"))
        assert await manager.process_orders() == 1
        assert order.status == OrderStatus.EXECUTED
        assert order.executed_price == Decimal("45")
        assert broker.get_account(PORTFOLIO_ID).cash == Decimal("9550")

    @pytest.mark.asyncio
    async def test_stop_order_fills_at_market(self, manager, market_data):
        order = await manager.place_order(
            request(), price_type=PriceType.STOP, limit_price=Decimal("55")
        )
        market_data.set_price("AAPL", Decimal("56"))

        await manager.process_orders()
        assert order.executed_price == Decimal("56")

    @pytest.mark.asyncio
    async def test_expire_orders(self, manager, market_data):
        order = await manager.place_order(
            request(),
            price_type=PriceType.LIMIT,
            limit_price=Decimal("45"),
            expires_at=datetime.utcnow() - timedelta(seconds=1),
        )
        market_data.set_price("AAPL", Decimal("40"))

        assert await manager.process_orders() == 0
        assert await manager.expire_orders() == 1
        assert order.status == OrderStatus.CANCELLED
        assert order.metadata["cancel_reason"] == "expired"

    @pytest.mark.asyncio
    async def test_cleanup_drops_old_terminal_orders(self, manager):
        order = await manager.place_order(request())
        order.updated_at = datetime.utcnow() - timedelta(hours=48)

        assert await manager.cleanup_order_history() == 1
        assert order.id not in manager.orders

    @pytest.mark.asyncio
    async def test_load_pending_orders(self, pipeline):
        await pipeline.submit_trade(request())
        manager = OrderManager(pipeline)
        assert await manager.load_pending_orders() == 1
        assert len(manager.orders) == 1

    @pytest.mark.asyncio
    async def test_statistics(self, manager):
        await manager.place_order(request())
        await manager.place_order(request(side=OrderSide.SELL, quantity="100"))
        await manager.place_order(request(), price_type=PriceType.LIMIT, limit_price=Decimal("1"))

        stats = manager.get_order_statistics()
        assert stats["total"] == 3
        assert stats["by_status"]["executed"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["resting"] == 1
        assert stats["fill_rate"] == 50.0


class TestLifecycle:
    def test_start_and_stop_schedule_sweeps(self, manager, scheduler):
        manager.start(scheduler)
        assert {h.name for h, _ in scheduler.jobs.values()} == {
            "order_fill_sweep", "order_expiry_sweep", "order_history_cleanup",
        }

        manager.stop()
        assert scheduler.jobs == {}
