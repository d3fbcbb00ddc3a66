"""Integration tests for the live trading flow.

These tests wire the real components together:
- StrategyOrchestrator ticks driven through the scheduler
- RuleEngine evaluation and PositionSizer sizing
- RiskManager validation inside the TradeExecutionPipeline
- PaperBroker fills and Database persistence
- OrderManager resting orders and notifications
"""
import pytest
import pytest_asyncio
from decimal import Decimal

from autotrader.core.models import (
    Action, InstanceStatus, OrderSide, OrderStatus, PriceType, SizingMethod,
    StrategyDefinition, TechnicalIndicators,
)
from autotrader.core.orchestrator import StrategyOrchestrator
from autotrader.execution.order_manager import OrderManager
from autotrader.notifications.notifier import NotificationDispatcher

from tests.conftest import PORTFOLIO_ID, make_rule


STRATEGY_ID = "strat-1"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def order_manager(pipeline):
    return OrderManager(pipeline)


@pytest.fixture
def limit_strategy():
    """Buy $1000 with a limit two dollars under the market when RSI < 30."""
    rule = make_rule(name="Oversold limit buy")
    rule.actions = [
        Action(
            type=OrderSide.BUY,
            sizing_method=SizingMethod.FIXED,
            size_value=Decimal("1000"),
            price_type=PriceType.LIMIT,
            price_offset=Decimal("-2"),
        )
    ]
    return StrategyDefinition(id="strat-limit", user_id="user-1", rules=[rule], symbols=["AAPL"])


@pytest_asyncio.fixture
async def full_orchestrator(rule_engine, risk_manager, pipeline, market_data, broker,
                            scheduler, recorder, runtime_config, order_manager):
    orchestrator = StrategyOrchestrator(
        rule_engine=rule_engine,
        risk_manager=risk_manager,
        pipeline=pipeline,
        market_data=market_data,
        broker=broker,
        scheduler=scheduler,
        notifier=NotificationDispatcher(notifiers=[recorder]),
        runtime_config=runtime_config,
        order_manager=order_manager,
    )
    yield orchestrator
    await orchestrator.shutdown()


# =============================================================================
# Market Order Flow
# =============================================================================

class TestMarketOrderFlow:
    """Test a full buy-then-sell cycle through scheduled ticks."""

    @pytest.mark.asyncio
    async def test_round_trip(self, full_orchestrator, strategy, deployment_config,
                              scheduler, market_data, broker, test_database, recorder):
        instance = await full_orchestrator.deploy(strategy, deployment_config)

        # Oversold: buy $1000 at 50
        await scheduler.run(f"strategy:{STRATEGY_ID}")
        account = broker.get_account(PORTFOLIO_ID)
        assert account.positions["AAPL"].quantity == Decimal("20")
        assert account.cash == Decimal("9000")

        # Overbought: exit the whole position at 60
        market_data.set_price("AAPL", Decimal("60"))
        market_data.set_indicators("AAPL", TechnicalIndicators(rsi=80.0, volatility=0.01))
        await scheduler.run(f"strategy:{STRATEGY_ID}")

        assert account.positions == {}
        assert account.cash == Decimal("10200")

        orders = await test_database.get_orders(PORTFOLIO_ID)
        assert len(orders) == 2
        assert {o.status for o in orders} == {OrderStatus.EXECUTED}
        assert {o.side for o in orders} == {OrderSide.BUY, OrderSide.SELL}
        assert all(o.strategy_id == STRATEGY_ID for o in orders)

        perf = full_orchestrator.get_performance(STRATEGY_ID)
        assert perf.total_trades == 2
        assert perf.closed_trades == 1
        assert perf.win_rate == Decimal("100")
        assert perf.total_return == Decimal("2")
        assert instance.error_count == 0

        await full_orchestrator.stop(STRATEGY_ID, user_id="user-1")
        await full_orchestrator.notifier.drain()

        assert recorder.types() == [
            "strategy_status", "trade_executed", "trade_executed", "strategy_status",
        ]
        assert scheduler.active(f"strategy:{STRATEGY_ID}") == []

    @pytest.mark.asyncio
    async def test_risk_rejection_recorded_as_failed_order(
        self, full_orchestrator, strategy, deployment_config, scheduler, risk_manager,
        broker, test_database, recorder
    ):
        risk_manager.record_trade_pnl(PORTFOLIO_ID, Decimal("-600"))

        instance = await full_orchestrator.deploy(strategy, deployment_config)
        await scheduler.run(f"strategy:{STRATEGY_ID}")

        [order] = await test_database.get_orders(PORTFOLIO_ID)
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "Daily loss limit reached ($500)"
        assert broker.get_account(PORTFOLIO_ID).cash == Decimal("10000")

        # A rejected order is not a tick error
        assert instance.error_count == 0
        assert instance.performance.total_trades == 0

        await full_orchestrator.notifier.drain()
        assert "trade_executed" not in recorder.types()


# =============================================================================
# Resting Order Flow
# =============================================================================

class TestLimitOrderFlow:
    """Test limit intents resting in the OrderManager until triggered."""

    @pytest.mark.asyncio
    async def test_limit_buy_fills_when_price_drops(
        self, full_orchestrator, limit_strategy, deployment_config, order_manager,
        market_data, broker, test_database
    ):
        await full_orchestrator.deploy(limit_strategy, deployment_config)

        submitted = await full_orchestrator.run_tick("strat-limit")
        assert submitted == 1

        [order] = order_manager.resting_orders()
        assert order.status == OrderStatus.PENDING
        assert order.trigger_price == Decimal("48")
        assert order.quantity == Decimal("20")
        assert broker.get_account(PORTFOLIO_ID).cash == Decimal("10000")

        # Not triggered at 49
        market_data.set_price("AAPL", Decimal("49"))
        assert await order_manager.process_orders() == 0

        market_data.set_price("AAPL", Decimal("47"))
        assert await order_manager.process_orders() == 1

        stored = await test_database.get_order(order.id)
        assert stored.status == OrderStatus.EXECUTED
        assert stored.executed_price == Decimal("48")
        assert broker.get_account(PORTFOLIO_ID).cash == Decimal("9040")
        assert order_manager.resting_orders() == []

    @pytest.mark.asyncio
    async def test_emergency_stop_halts_resting_flow(
        self, full_orchestrator, limit_strategy, deployment_config, risk_manager
    ):
        await full_orchestrator.deploy(limit_strategy, deployment_config)

        stopped = await full_orchestrator.emergency_stop(PORTFOLIO_ID, reason="manual halt")

        assert [i.status for i in stopped] == [InstanceStatus.STOPPED]
        assert risk_manager.is_emergency_stopped(PORTFOLIO_ID)
        assert full_orchestrator.get_instance("strat-limit") is None
