"""Unit tests for the strategy orchestrator."""
import asyncio

import pytest
import pytest_asyncio
from decimal import Decimal
from pydantic import ValidationError

from autotrader.core.config import OrchestratorConfig
from autotrader.core.exceptions import (
    AccessDeniedError, InvalidStateTransitionError, RuleValidationError,
    StrategyAlreadyDeployedError, StrategyNotFoundError,
)
from autotrader.core.models import (
    Action, InstanceStatus, OrderSide, OrderStatus, PriceType, Recommendation,
    RiskLevel, SizingMethod, StrategyDefinition, TechnicalIndicators, TradingRule,
)
from autotrader.core.orchestrator import (
    EMERGENCY_STOP_REASON, StrategyOrchestrator, signal_risk_level,
)
from autotrader.execution.order_manager import OrderManager
from autotrader.notifications.notifier import NotificationDispatcher

from tests.conftest import PORTFOLIO_ID, make_rule

STRATEGY_ID = "strat-1"


@pytest_asyncio.fixture
async def deployed(orchestrator, strategy, deployment_config):
    return await orchestrator.deploy(strategy, deployment_config)


def set_cash(broker, amount):
    broker.get_account(PORTFOLIO_ID).cash = Decimal(amount)


# =============================================================================
# Deployment
# =============================================================================

class TestDeploy:
    """Test deploying strategies."""

    @pytest.mark.asyncio
    async def test_deploy_starts_timer(self, orchestrator, deployed, scheduler, recorder):
        assert deployed.status == InstanceStatus.RUNNING
        assert deployed.id.startswith(f"{STRATEGY_ID}-")
        assert deployed.performance.current_value == Decimal("10000")
        assert deployed.performance.peak_value == Decimal("10000")

        [handle] = scheduler.active(f"strategy:{STRATEGY_ID}")
        assert handle.interval == 60
        assert orchestrator.has_timer(STRATEGY_ID)

        await orchestrator.notifier.drain()
        assert recorder.types() == ["strategy_status"]

    @pytest.mark.asyncio
    async def test_deploy_twice_rejected(self, orchestrator, deployed, strategy, deployment_config):
        with pytest.raises(StrategyAlreadyDeployedError):
            await orchestrator.deploy(strategy, deployment_config)

    @pytest.mark.asyncio
    async def test_deploy_other_users_strategy_denied(self, orchestrator, strategy, deployment_config):
        config = deployment_config.model_copy(update={"user_id": "intruder"})
        with pytest.raises(AccessDeniedError):
            await orchestrator.deploy(strategy, config)

    @pytest.mark.asyncio
    async def test_strategy_without_rules_rejected(self, orchestrator, deployment_config):
        strategy = StrategyDefinition(id="empty", user_id="user-1")
        with pytest.raises(RuleValidationError) as exc:
            await orchestrator.deploy(strategy, deployment_config)
        assert str(exc.value) == "Strategy validation failed: Strategy must have at least one rule"

    @pytest.mark.asyncio
    async def test_invalid_rule_errors_are_prefixed(self, orchestrator, deployment_config):
        strategy = StrategyDefinition(
            id="bad",
            user_id="user-1",
            rules=[TradingRule(portfolio_id=PORTFOLIO_ID, name="Empty")],
        )
        with pytest.raises(RuleValidationError) as exc:
            await orchestrator.deploy(strategy, deployment_config)

        assert "Empty: Rule must have at least one condition" in exc.value.errors
        assert orchestrator.get_instance("bad") is None

    @pytest.mark.asyncio
    async def test_rules_for_other_portfolio_rejected(self, orchestrator, strategy, deployment_config):
        config = deployment_config.model_copy(update={"portfolio_id": "pf-2"})

        with pytest.raises(RuleValidationError) as exc:
            await orchestrator.deploy(strategy, config)

        rule = strategy.rules[0]
        assert f"{rule.name}: Rule belongs to portfolio {PORTFOLIO_ID}, not pf-2" in exc.value.errors
        assert orchestrator.get_instance(STRATEGY_ID) is None
        assert not orchestrator.has_timer(STRATEGY_ID)

    @pytest.mark.asyncio
    async def test_redeploy_after_stop(self, orchestrator, deployed, strategy, deployment_config):
        await orchestrator.stop(STRATEGY_ID)
        instance = await orchestrator.deploy(strategy, deployment_config)
        assert instance.is_running


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Test pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_pause_cancels_timer(self, orchestrator, deployed):
        instance = await orchestrator.pause(STRATEGY_ID)

        assert instance.status == InstanceStatus.PAUSED
        assert instance.paused_at is not None
        assert not orchestrator.has_timer(STRATEGY_ID)
        assert await orchestrator.run_tick(STRATEGY_ID) == 0

    @pytest.mark.asyncio
    async def test_resume_restarts_timer(self, orchestrator, deployed, scheduler):
        await orchestrator.pause(STRATEGY_ID)
        instance = await orchestrator.resume(STRATEGY_ID)

        assert instance.is_running
        assert len(scheduler.active(f"strategy:{STRATEGY_ID}")) == 1

    @pytest.mark.asyncio
    async def test_resume_running_strategy_rejected(self, orchestrator, deployed):
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.resume(STRATEGY_ID)

    @pytest.mark.asyncio
    async def test_stop_removes_instance(self, orchestrator, deployed, scheduler):
        instance = await orchestrator.stop(STRATEGY_ID, reason="done")

        assert instance.status == InstanceStatus.STOPPED
        assert instance.stop_reason == "done"
        assert orchestrator.get_instance(STRATEGY_ID) is None
        assert scheduler.active(f"strategy:{STRATEGY_ID}") == []

        with pytest.raises(StrategyNotFoundError):
            await orchestrator.pause(STRATEGY_ID)

    @pytest.mark.asyncio
    async def test_stop_paused_strategy(self, orchestrator, deployed):
        await orchestrator.pause(STRATEGY_ID)
        instance = await orchestrator.stop(STRATEGY_ID)
        assert instance.status == InstanceStatus.STOPPED

    @pytest.mark.asyncio
    async def test_other_user_cannot_pause(self, orchestrator, deployed):
        with pytest.raises(AccessDeniedError):
            await orchestrator.pause(STRATEGY_ID, user_id="intruder")

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, orchestrator):
        with pytest.raises(StrategyNotFoundError):
            await orchestrator.stop("missing")
        with pytest.raises(StrategyNotFoundError):
            orchestrator.get_performance("missing")

    @pytest.mark.asyncio
    async def test_list_instances(self, orchestrator, deployed):
        assert orchestrator.list_instances(portfolio_id=PORTFOLIO_ID) == [deployed]
        assert orchestrator.list_instances(user_id="someone-else") == []


# =============================================================================
# Ticks
# =============================================================================

class TestTick:
    """Test rule evaluation and order submission per tick."""

    @pytest.mark.asyncio
    async def test_tick_buys_on_oversold(self, orchestrator, deployed, broker, recorder):
        assert await orchestrator.run_tick(STRATEGY_ID) == 1

        account = broker.get_account(PORTFOLIO_ID)
        assert account.positions["AAPL"].quantity == Decimal("20")
        assert account.cash == Decimal("9000")

        perf = orchestrator.get_performance(STRATEGY_ID)
        assert perf.total_trades == 1
        assert perf.current_value == Decimal("10000")
        assert deployed.last_tick_at is not None

        await orchestrator.notifier.drain()
        assert "trade_executed" in recorder.types()

    @pytest.mark.asyncio
    async def test_scheduled_job_runs_tick(self, deployed, scheduler, broker):
        await scheduler.run(f"strategy:{STRATEGY_ID}")
        assert "AAPL" in broker.get_account(PORTFOLIO_ID).positions

    @pytest.mark.asyncio
    async def test_tick_sells_and_records_win(self, orchestrator, deployed, market_data, broker):
        await orchestrator.run_tick(STRATEGY_ID)

        market_data.set_price("AAPL", Decimal("60"))
        market_data.set_indicators("AAPL", TechnicalIndicators(rsi=80.0, volatility=0.01))
        assert await orchestrator.run_tick(STRATEGY_ID) == 1

        assert "AAPL" not in broker.get_account(PORTFOLIO_ID).positions
        perf = deployed.performance
        assert perf.closed_trades == 1
        assert perf.profitable_trades == 1
        assert perf.win_rate == Decimal("100")
        assert perf.realized_pnl_today == Decimal("200")
        assert perf.total_return == Decimal("2")

    @pytest.mark.asyncio
    async def test_no_trigger_no_order(self, orchestrator, deployed, market_data, broker):
        market_data.set_indicators("AAPL", TechnicalIndicators(rsi=50.0, volatility=0.01))
        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert broker.get_account(PORTFOLIO_ID).cash == Decimal("10000")

    @pytest.mark.asyncio
    async def test_buy_capped_at_max_position_size(
        self, orchestrator, strategy, deployment_config, broker
    ):
        limits = deployment_config.risk_limits.model_copy(update={"max_position_size": Decimal("5")})
        config = deployment_config.model_copy(update={"risk_limits": limits})
        await orchestrator.deploy(strategy, config)

        await orchestrator.run_tick(STRATEGY_ID)
        # 5% of 10000 at 50 -> 10 shares
        assert broker.get_account(PORTFOLIO_ID).positions["AAPL"].quantity == Decimal("10")

    @pytest.mark.asyncio
    async def test_disabled_runtime_skips_tick(self, orchestrator, deployed, broker):
        orchestrator.update_runtime_config(enabled=False)
        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert broker.get_account(PORTFOLIO_ID).positions == {}

    @pytest.mark.asyncio
    async def test_auto_execution_off_only_logs(self, orchestrator, deployed, broker, test_database):
        orchestrator.update_runtime_config(auto_execution_enabled=False)

        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert broker.get_account(PORTFOLIO_ID).cash == Decimal("10000")
        assert await test_database.count_orders(PORTFOLIO_ID) == 0


# =============================================================================
# Resting Orders
# =============================================================================

class TestRestingOrders:
    """Test limit intents handed to the OrderManager."""

    @pytest.mark.asyncio
    async def test_resting_limit_order_is_not_a_trade(
        self, rule_engine, risk_manager, pipeline, market_data, broker,
        scheduler, recorder, runtime_config, deployment_config
    ):
        order_manager = OrderManager(pipeline)
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
        strategy = StrategyDefinition(id="strat-limit", user_id="user-1", rules=[rule])
        instance = await orchestrator.deploy(strategy, deployment_config)

        assert await orchestrator.run_tick("strat-limit") == 1
        await orchestrator.notifier.drain()

        [order] = order_manager.resting_orders()
        assert order.status == OrderStatus.PENDING
        assert instance.performance.total_trades == 0
        assert recorder.types() == ["strategy_status"]
        assert broker.get_account(PORTFOLIO_ID).positions == {}

        await orchestrator.shutdown()


# =============================================================================
# Runtime Gates
# =============================================================================

class TestGates:
    """Test confidence, risk level, order cap and cooldown gates."""

    @pytest.mark.asyncio
    async def test_high_volatility_gated(self, orchestrator, deployed, market_data, broker):
        market_data.set_indicators("AAPL", TechnicalIndicators(rsi=25.0, volatility=0.08))
        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert broker.get_account(PORTFOLIO_ID).positions == {}

    @pytest.mark.asyncio
    async def test_high_volatility_allowed_when_max_level_high(
        self, orchestrator, deployed, market_data
    ):
        orchestrator.update_runtime_config(maximum_risk_level="high")
        market_data.set_indicators("AAPL", TechnicalIndicators(rsi=25.0, volatility=0.08))
        assert await orchestrator.run_tick(STRATEGY_ID) == 1

    @pytest.mark.asyncio
    async def test_cooldown_blocks_repeat_orders(self, orchestrator, deployed):
        orchestrator.update_runtime_config(cooldown_minutes=15)
        assert await orchestrator.run_tick(STRATEGY_ID) == 1
        assert await orchestrator.run_tick(STRATEGY_ID) == 0

    @pytest.mark.asyncio
    async def test_zero_cooldown_allows_repeat_orders(self, orchestrator, deployed, broker):
        assert await orchestrator.run_tick(STRATEGY_ID) == 1
        assert await orchestrator.run_tick(STRATEGY_ID) == 1
        assert broker.get_account(PORTFOLIO_ID).positions["AAPL"].quantity == Decimal("40")

    @pytest.mark.asyncio
    async def test_daily_order_cap(self, orchestrator, deployed):
        orchestrator.update_runtime_config(max_orders_per_day=1)
        assert await orchestrator.run_tick(STRATEGY_ID) == 1
        assert await orchestrator.run_tick(STRATEGY_ID) == 0

    @pytest.mark.asyncio
    async def test_low_confidence_recommendation_gated(
        self, orchestrator, deployed, context, buy_rule, runtime_config
    ):
        [intent] = orchestrator.rule_engine.execute_actions(buy_rule.actions, context)

        context.recommendation = Recommendation(type="BUY", confidence=0.5)
        reason = orchestrator._gate(deployed, intent, context, runtime_config.get())
        assert reason == "confidence 0.5 below 0.75"

        context.recommendation = Recommendation(type="BUY", confidence=0.9)
        assert orchestrator._gate(deployed, intent, context, runtime_config.get()) is None

    @pytest.mark.asyncio
    async def test_invalid_runtime_update_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.update_runtime_config(minimum_confidence=1.5)
        assert orchestrator.runtime_config.get().minimum_confidence == 0.75

    @pytest.mark.parametrize("volatility,level", [
        (None, RiskLevel.MEDIUM),
        (0.01, RiskLevel.LOW),
        (0.02, RiskLevel.MEDIUM),
        (0.049, RiskLevel.MEDIUM),
        (0.05, RiskLevel.HIGH),
    ])
    def test_signal_risk_level(self, volatility, level):
        assert signal_risk_level(volatility) == level


# =============================================================================
# Risk Limits and Emergency Stop
# =============================================================================

class TestRiskLimits:
    """Test per-instance limits and the portfolio emergency stop."""

    @pytest.mark.asyncio
    async def test_drawdown_breach_pauses(self, orchestrator, deployed, broker, scheduler, recorder):
        set_cash(broker, "9300")

        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert deployed.status == InstanceStatus.PAUSED
        assert scheduler.active(f"strategy:{STRATEGY_ID}") == []

        await orchestrator.notifier.drain()
        [breach] = [e for e in recorder.events if e.type.value == "risk_breach"]
        assert breach.payload["violations"] == [
            "Current drawdown (7.00%) exceeds limit (5%)",
            "Daily loss ($700.00) exceeds limit ($500)",
        ]

    @pytest.mark.asyncio
    async def test_within_limits_keeps_running(self, orchestrator, deployed, broker):
        set_cash(broker, "9800")
        await orchestrator.run_tick(STRATEGY_ID)
        assert deployed.is_running
        assert deployed.performance.current_drawdown == Decimal("2")

    @pytest.mark.asyncio
    async def test_emergency_stop_on_portfolio_drawdown(
        self, orchestrator, deployed, broker, risk_manager, recorder
    ):
        risk_manager.update_drawdown(PORTFOLIO_ID, Decimal("10000"))
        set_cash(broker, "8900")

        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert deployed.status == InstanceStatus.STOPPED
        assert deployed.stop_reason == EMERGENCY_STOP_REASON
        assert orchestrator.get_instance(STRATEGY_ID) is None
        assert risk_manager.is_emergency_stopped(PORTFOLIO_ID)

        await orchestrator.notifier.drain()
        assert "emergency_stop" in recorder.types()

    @pytest.mark.asyncio
    async def test_manual_emergency_stop(self, orchestrator, deployed, risk_manager):
        await orchestrator.pause(STRATEGY_ID)
        stopped = await orchestrator.emergency_stop(PORTFOLIO_ID, "manual halt")

        assert [i.strategy_id for i in stopped] == [STRATEGY_ID]
        assert stopped[0].stop_reason == "manual halt"
        assert risk_manager.is_emergency_stopped(PORTFOLIO_ID)


# =============================================================================
# Circuit Breaker and Health
# =============================================================================

class TestCircuitBreaker:
    """Test consecutive error handling."""

    @pytest.mark.asyncio
    async def test_five_errors_trip_breaker(self, orchestrator, deployed, broker, monkeypatch, recorder):
        async def broken(portfolio_id):
            raise RuntimeError("broker down")

        monkeypatch.setattr(broker, "portfolio_snapshot", broken)

        for _ in range(4):
            await orchestrator.run_tick(STRATEGY_ID)
        assert deployed.is_running
        assert deployed.error_count == 4

        await orchestrator.run_tick(STRATEGY_ID)
        assert deployed.status == InstanceStatus.ERROR
        assert deployed.last_error == "broker down"
        assert not orchestrator.has_timer(STRATEGY_ID)

        await orchestrator.notifier.drain()
        assert recorder.types().count("error") == 5

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self, orchestrator, deployed, broker, monkeypatch):
        original = broker.portfolio_snapshot

        async def broken(portfolio_id):
            raise RuntimeError("broker down")

        monkeypatch.setattr(broker, "portfolio_snapshot", broken)
        await orchestrator.run_tick(STRATEGY_ID)
        assert deployed.error_count == 1

        monkeypatch.setattr(broker, "portfolio_snapshot", original)
        await orchestrator.run_tick(STRATEGY_ID)
        assert deployed.error_count == 0

    @pytest.mark.asyncio
    async def test_missing_portfolio_is_an_error(self, orchestrator, deployed, broker):
        del broker.accounts[PORTFOLIO_ID]
        await orchestrator.run_tick(STRATEGY_ID)
        assert deployed.last_error == "Portfolio not found"

    @pytest.mark.asyncio
    async def test_tick_timeout_counts_as_error(
        self, rule_engine, risk_manager, pipeline, market_data, broker,
        scheduler, runtime_config, strategy, deployment_config, monkeypatch,
    ):
        orchestrator = StrategyOrchestrator(
            rule_engine=rule_engine,
            risk_manager=risk_manager,
            pipeline=pipeline,
            market_data=market_data,
            broker=broker,
            scheduler=scheduler,
            notifier=NotificationDispatcher(notifiers=[]),
            runtime_config=runtime_config,
            config=OrchestratorConfig(tick_timeout_seconds=0.01),
        )
        instance = await orchestrator.deploy(strategy, deployment_config)

        async def slow(portfolio_id):
            await asyncio.sleep(1)

        monkeypatch.setattr(broker, "portfolio_snapshot", slow)
        assert await orchestrator.run_tick(STRATEGY_ID) == 0
        assert instance.last_error == "Strategy iteration timeout"
        assert instance.error_count == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_check_restarts_lost_timer(self, orchestrator, deployed, scheduler):
        [handle] = scheduler.active(f"strategy:{STRATEGY_ID}")
        scheduler.cancel(handle)
        assert not orchestrator.has_timer(STRATEGY_ID)

        assert await orchestrator.health_check() == 1
        assert orchestrator.has_timer(STRATEGY_ID)
        assert await orchestrator.health_check() == 0

    @pytest.mark.asyncio
    async def test_health_monitor_and_shutdown(self, orchestrator, deployed, scheduler):
        orchestrator.start_health_monitor()
        assert len(scheduler.active("strategy_health_check")) == 1

        await orchestrator.shutdown()
        assert scheduler.jobs == {}
