"""Pytest fixtures and utilities for the AutoTrader test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List

from autotrader.core.config import RuntimeConfig, RuntimeConfigStore
from autotrader.core.models import (
    Action, Condition, ConditionOperator, DeploymentConfig, ExecutionFrequency,
    MarketData, OrderSide, PortfolioSnapshot, PositionSnapshot, RuleType,
    SizingMethod, StrategyDefinition, StrategyRiskLimits, TechnicalIndicators,
    TradingContext, TradingRule,
)
from autotrader.core.orchestrator import StrategyOrchestrator
from autotrader.core.scheduler import ScheduleHandle, Scheduler
from autotrader.exchange.market_data import StaticMarketDataProvider
from autotrader.exchange.paper_broker import PaperBroker
from autotrader.execution.pipeline import TradeExecutionPipeline
from autotrader.notifications.notifier import NotificationDispatcher, Notifier
from autotrader.risk.risk_manager import RiskManager
from autotrader.rules.engine import RuleEngine
from autotrader.storage.database import Database

PORTFOLIO_ID = "pf-1"


# =============================================================================
# Test Doubles
# =============================================================================

class FakeScheduler(Scheduler):
    """Records scheduled jobs; tests run them by hand."""

    def __init__(self):
        self.jobs: Dict[int, tuple] = {}

    def schedule(self, interval, job, name, run_immediately=False) -> ScheduleHandle:
        handle = ScheduleHandle(name=name, interval=interval)
        self.jobs[handle.id] = (handle, job)
        return handle

    def cancel(self, handle: ScheduleHandle) -> None:
        handle.cancelled = True
        self.jobs.pop(handle.id, None)

    async def shutdown(self) -> None:
        for handle, _ in list(self.jobs.values()):
            self.cancel(handle)

    def active(self, name: str) -> List[ScheduleHandle]:
        return [h for h, _ in self.jobs.values() if h.name == name and h.is_active]

    async def run(self, name: str):
        for handle, job in list(self.jobs.values()):
            if handle.name == name:
                await job()


class RecordingNotifier(Notifier):
    """Collects every delivered event."""

    def __init__(self):
        self.events = []

    async def send(self, event) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type.value for e in self.events]


# =============================================================================
# Model Fixtures
# =============================================================================

def make_rule(
    name: str = "Oversold buy",
    field: str = "technical.rsi",
    operator: ConditionOperator = ConditionOperator.LESS_THAN,
    value=30,
    side: OrderSide = OrderSide.BUY,
    sizing_method: SizingMethod = SizingMethod.FIXED,
    size_value=Decimal("1000"),
    priority=None,
    rule_type: RuleType = RuleType.ENTRY,
    portfolio_id: str = PORTFOLIO_ID,
    **kwargs,
) -> TradingRule:
    return TradingRule(
        portfolio_id=portfolio_id,
        name=name,
        priority=priority,
        rule_type=rule_type,
        conditions=[Condition(field=field, operator=operator, value=value)],
        actions=[Action(type=side, sizing_method=sizing_method, size_value=size_value)],
        **kwargs,
    )


def make_bars(symbol: str, closes: List[float], start: datetime = None) -> List[MarketData]:
    start = start or datetime(2024, 1, 1)
    bars = []
    for i, close in enumerate(closes):
        price = Decimal(str(close))
        bars.append(MarketData(
            symbol=symbol,
            timestamp=start + timedelta(days=i),
            open=price,
            high=price * Decimal("1.01"),
            low=price * Decimal("0.99"),
            close=price,
            volume=Decimal("1000"),
        ))
    return bars


@pytest.fixture
def buy_rule():
    return make_rule()


@pytest.fixture
def sell_rule():
    return make_rule(
        name="Overbought exit",
        operator=ConditionOperator.GREATER_THAN,
        value=70,
        side=OrderSide.SELL,
        sizing_method=SizingMethod.FULL_POSITION,
        size_value=None,
        rule_type=RuleType.EXIT,
    )


@pytest.fixture
def portfolio():
    """$10,000 portfolio holding 20 AAPL."""
    return PortfolioSnapshot(
        portfolio_id=PORTFOLIO_ID,
        cash=Decimal("9000"),
        total_value=Decimal("10000"),
        positions=[
            PositionSnapshot(
                symbol="AAPL",
                quantity=Decimal("20"),
                average_price=Decimal("45"),
                current_price=Decimal("50"),
            )
        ],
    )


@pytest.fixture
def context(portfolio):
    return TradingContext.from_portfolio(
        portfolio,
        "AAPL",
        Decimal("50"),
        technical_indicators=TechnicalIndicators(rsi=25.0, volatility=0.01, volume=1000.0),
    )


@pytest.fixture
def strategy(buy_rule, sell_rule):
    return StrategyDefinition(
        id="strat-1",
        name="RSI reversion",
        user_id="user-1",
        rules=[buy_rule, sell_rule],
        symbols=["AAPL"],
    )


@pytest.fixture
def deployment_config():
    return DeploymentConfig(
        portfolio_id=PORTFOLIO_ID,
        user_id="user-1",
        initial_capital=Decimal("10000"),
        max_positions=5,
        risk_limits=StrategyRiskLimits(
            max_drawdown=Decimal("5"),
            max_position_size=Decimal("20"),
            daily_loss_limit=Decimal("500"),
        ),
        execution_frequency=ExecutionFrequency.MINUTE,
        symbols=["AAPL"],
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def market_data():
    provider = StaticMarketDataProvider(prices={"AAPL": Decimal("50")})
    provider.set_indicators("AAPL", TechnicalIndicators(rsi=25.0, volatility=0.01, volume=1000.0))
    return provider


@pytest.fixture
def broker(market_data):
    paper = PaperBroker(market_data)
    paper.open_account(PORTFOLIO_ID, Decimal("10000"))
    return paper


@pytest.fixture
def risk_manager(broker):
    return RiskManager(broker=broker)


@pytest.fixture
def rule_engine():
    return RuleEngine()


@pytest.fixture
def pipeline(broker, risk_manager, market_data, test_database):
    return TradeExecutionPipeline(
        broker=broker,
        risk_manager=risk_manager,
        market_data=market_data,
        repository=test_database,
    )


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def runtime_config():
    return RuntimeConfigStore(RuntimeConfig(
        enabled=True,
        auto_execution_enabled=True,
        minimum_confidence=0.75,
        maximum_risk_level="medium",
        max_orders_per_day=50,
        cooldown_minutes=0,
    ))


@pytest.fixture
def orchestrator(rule_engine, risk_manager, pipeline, market_data, broker,
                 scheduler, recorder, runtime_config):
    return StrategyOrchestrator(
        rule_engine=rule_engine,
        risk_manager=risk_manager,
        pipeline=pipeline,
        market_data=market_data,
        broker=broker,
        scheduler=scheduler,
        notifier=NotificationDispatcher(notifiers=[recorder]),
        runtime_config=runtime_config,
    )


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory unless they carry an explicit marker."""
    for item in items:
        if any(marker.name in ["unit", "integration"] for marker in item.own_markers):
            continue
        if "integration" in item.path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
