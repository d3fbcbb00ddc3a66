"""Unit tests for data models."""
import pytest
from datetime import datetime
from decimal import Decimal
from pydantic import ValidationError

from autotrader.core.exceptions import InvalidStateTransitionError
from autotrader.core.models import (
    ActionResult, AutoTrade, BacktestParams, DeploymentConfig, ExecutionFrequency,
    InstanceStatus, MarketData, OrderSide, OrderStatus, PortfolioSnapshot,
    PositionSnapshot, RiskLevel, RuleType, StrategyDefinition, StrategyInstance,
    StrategyRiskLimits, TradeRequest,
)

from tests.conftest import PORTFOLIO_ID


# =============================================================================
# Enum Tests
# =============================================================================

class TestEnums:
    def test_rule_type_rank(self):
        ranked = sorted(RuleType, key=lambda t: t.evaluation_rank)
        assert ranked == [RuleType.EXIT, RuleType.RISK, RuleType.ENTRY]

    def test_risk_level_rank(self):
        assert RiskLevel.LOW.rank < RiskLevel.MEDIUM.rank < RiskLevel.HIGH.rank

    def test_frequency_intervals(self):
        assert ExecutionFrequency.MINUTE.interval_seconds == 60
        assert ExecutionFrequency.HOUR.interval_seconds == 3600
        assert ExecutionFrequency.DAILY.interval_seconds == 86400

    def test_terminal_statuses(self):
        assert {s for s in OrderStatus if s.is_terminal} == {
            OrderStatus.EXECUTED, OrderStatus.FAILED, OrderStatus.CANCELLED,
        }


# =============================================================================
# MarketData Tests
# =============================================================================

class TestMarketData:
    def test_valid_bar(self):
        bar = MarketData(
            symbol="AAPL",
            timestamp=datetime(2024, 1, 1),
            open=Decimal("10"),
            high=Decimal("12"),
            low=Decimal("9"),
            close=Decimal("11"),
        )
        assert bar.range == Decimal("3")
        assert bar.timeframe == "1d"

    def test_low_above_high_rejected(self):
        with pytest.raises(ValidationError):
            MarketData(
                symbol="AAPL",
                timestamp=datetime(2024, 1, 1),
                open=Decimal("10"),
                high=Decimal("9"),
                low=Decimal("11"),
                close=Decimal("10"),
            )


# =============================================================================
# Snapshot Tests
# =============================================================================

class TestSnapshots:
    """Test position and portfolio snapshots."""

    def test_position_values(self):
        position = PositionSnapshot(
            symbol="AAPL", quantity=Decimal("10"), average_price=Decimal("40"),
            current_price=Decimal("50"),
        )
        assert position.cost_basis == Decimal("400")
        assert position.current_value == Decimal("500")
        assert position.pnl_percentage == Decimal("25")

    def test_unmarked_position_uses_average_price(self):
        position = PositionSnapshot(symbol="AAPL", quantity=Decimal("2"), average_price=Decimal("40"))
        assert position.current_value == Decimal("80")

    def test_empty_cost_basis(self):
        position = PositionSnapshot(symbol="AAPL", quantity=Decimal("0"), average_price=Decimal("40"))
        assert position.pnl_percentage == Decimal("0")

    def test_portfolio_ignores_empty_positions(self):
        portfolio = PortfolioSnapshot(
            portfolio_id=PORTFOLIO_ID,
            cash=Decimal("100"),
            total_value=Decimal("100"),
            positions=[PositionSnapshot(symbol="AAPL", quantity=Decimal("0"), average_price=Decimal("1"))],
        )
        assert portfolio.position_for("AAPL") is None
        assert portfolio.open_position_count == 0

    def test_context_from_portfolio(self, portfolio, context):
        assert context.portfolio_value == portfolio.total_value
        assert context.cash_balance == Decimal("9000")
        assert context.position_for().quantity == Decimal("20")
        assert context.position_for("MSFT") is None


# =============================================================================
# Order Tests
# =============================================================================

class TestOrderLifecycle:
    """Test AutoTrade state transitions."""

    @pytest.fixture
    def order(self):
        return AutoTrade(
            portfolio_id=PORTFOLIO_ID, symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("1")
        )

    def test_execute_path(self, order):
        order.transition_to(OrderStatus.EXECUTING)
        order.mark_executed(Decimal("50"), Decimal("1"))

        assert order.status == OrderStatus.EXECUTED
        assert order.is_terminal
        assert order.executed_at is not None
        assert order.updated_at is not None

    def test_fail_path(self, order):
        order.transition_to(OrderStatus.EXECUTING)
        order.mark_failed("Insufficient funds")
        assert order.failure_reason == "Insufficient funds"

    def test_cannot_skip_executing(self, order):
        with pytest.raises(InvalidStateTransitionError):
            order.mark_executed(Decimal("50"), Decimal("1"))

    def test_terminal_is_final(self, order):
        order.transition_to(OrderStatus.CANCELLED)
        with pytest.raises(InvalidStateTransitionError):
            order.transition_to(OrderStatus.EXECUTING)

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            TradeRequest(portfolio_id=PORTFOLIO_ID, symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("0"))

    def test_action_result_actionable(self):
        assert ActionResult(type=OrderSide.BUY, symbol="AAPL", quantity=Decimal("1")).is_actionable
        assert not ActionResult(type=OrderSide.BUY, symbol="AAPL").is_actionable
        assert not ActionResult(
            type=OrderSide.BUY, symbol="AAPL", quantity=Decimal("1"), error="boom"
        ).is_actionable


# =============================================================================
# Strategy Instance Tests
# =============================================================================

class TestStrategyInstance:
    """Test instance status transitions and error accounting."""

    @pytest.fixture
    def instance(self):
        return StrategyInstance(
            id="strat-1-1",
            strategy_id="strat-1",
            strategy=StrategyDefinition(id="strat-1"),
            config=DeploymentConfig(portfolio_id=PORTFOLIO_ID, initial_capital=Decimal("1000")),
        )

    def test_pause_resume_stop(self, instance):
        instance.pause()
        assert instance.status == InstanceStatus.PAUSED
        instance.resume()
        assert instance.is_running and instance.paused_at is None
        instance.stop("done")
        assert instance.stop_reason == "done"

    def test_paused_can_stop(self, instance):
        instance.pause()
        instance.stop("done")
        assert instance.status == InstanceStatus.STOPPED

    def test_error_is_terminal(self, instance):
        instance.transition_to(InstanceStatus.ERROR)
        with pytest.raises(InvalidStateTransitionError):
            instance.resume()

    def test_paused_cannot_error(self, instance):
        instance.pause()
        with pytest.raises(InvalidStateTransitionError):
            instance.transition_to(InstanceStatus.ERROR)

    def test_error_counting(self, instance):
        assert instance.record_error("a") == 1
        assert instance.record_error("b") == 2
        assert instance.last_error == "b"
        instance.clear_errors()
        assert instance.error_count == 0


# =============================================================================
# Validation Tests
# =============================================================================

class TestValidation:
    def test_risk_limit_bounds(self):
        with pytest.raises(ValidationError):
            StrategyRiskLimits(max_drawdown=Decimal("0"))
        with pytest.raises(ValidationError):
            StrategyRiskLimits(correlation_limit=Decimal("1.5"))

    def test_backtest_dates_ordered(self):
        with pytest.raises(ValidationError):
            BacktestParams(
                start_date=datetime(2024, 2, 1),
                end_date=datetime(2024, 1, 1),
                initial_capital=Decimal("1000"),
                symbols=["AAPL"],
            )

    def test_backtest_needs_symbols(self):
        with pytest.raises(ValidationError):
            BacktestParams(
                start_date=datetime(2024, 1, 1),
                end_date=datetime(2024, 2, 1),
                initial_capital=Decimal("1000"),
                symbols=[],
            )
