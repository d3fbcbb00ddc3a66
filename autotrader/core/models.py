"""Data models for the automated trading core.

This module defines the data structures shared by every component:
- Rule domain: TradingRule, Condition, Action
- Evaluation input: TradingContext and the portfolio/position snapshots it holds
- Execution: TradeRequest, AutoTrade (the persisted order), Fill, TradeResult
- Orchestration: StrategyDefinition, DeploymentConfig, StrategyInstance
- Market data: MarketData (one OHLCV bar)
- Backtest output: TradeDetail, PerformanceMetrics, RiskMetrics

All monetary values use Decimal for precision.
All timestamps are naive UTC datetime objects.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from autotrader.core.exceptions import InvalidStateTransitionError


# =============================================================================
# Enums
# =============================================================================

class RuleType(str, Enum):
    """Rule category, used to order rules of equal priority."""
    ENTRY = "entry"
    EXIT = "exit"
    RISK = "risk"

    @property
    def evaluation_rank(self) -> int:
        """Exit rules are kept ahead of risk rules, risk ahead of entry."""
        return {RuleType.EXIT: 0, RuleType.RISK: 1, RuleType.ENTRY: 2}[self]


class ConditionOperator(str, Enum):
    """Comparison operators available to a condition."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"


class LogicalConnector(str, Enum):
    """How a condition combines with the next one."""
    AND = "AND"
    OR = "OR"


class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"


class SizingMethod(str, Enum):
    """Position sizing algorithms."""
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    FULL_POSITION = "full_position"
    KELLY = "kelly"
    VOLATILITY_ADJUSTED = "volatility_adjusted"
    RISK_PARITY = "risk_parity"


class PriceType(str, Enum):
    """How the order price is derived from the current price."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    PENDING = "pending"           # Created, not yet picked up
    EXECUTING = "executing"       # Validation and fill in progress
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.EXECUTED, OrderStatus.FAILED, OrderStatus.CANCELLED)


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.EXECUTING, OrderStatus.CANCELLED},
    OrderStatus.EXECUTING: {OrderStatus.EXECUTED, OrderStatus.FAILED},
    OrderStatus.EXECUTED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.CANCELLED: set(),
}


class InstanceStatus(str, Enum):
    """Strategy instance status."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"               # Circuit breaker tripped; redeploy required


INSTANCE_TRANSITIONS = {
    InstanceStatus.RUNNING: {InstanceStatus.PAUSED, InstanceStatus.STOPPED, InstanceStatus.ERROR},
    InstanceStatus.PAUSED: {InstanceStatus.RUNNING, InstanceStatus.STOPPED},
    InstanceStatus.STOPPED: set(),
    InstanceStatus.ERROR: set(),
}


class ExecutionFrequency(str, Enum):
    """How often a deployed strategy ticks."""
    MINUTE = "minute"
    HOUR = "hour"
    DAILY = "daily"

    @property
    def interval_seconds(self) -> int:
        return {
            ExecutionFrequency.MINUTE: 60,
            ExecutionFrequency.HOUR: 3600,
            ExecutionFrequency.DAILY: 86400,
        }[self]


class RiskLevel(str, Enum):
    """Risk grade of a trade intent."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}[self]


class RiskTolerance(str, Enum):
    """Operator risk appetite used for presets and sizing recommendations."""
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class TradingMode(str, Enum):
    """Paper trading or live brokerage."""
    PAPER = "paper"
    LIVE = "live"


# =============================================================================
# Market Data
# =============================================================================

class MarketData(BaseModel):
    """One OHLCV bar for a symbol.

    Attributes:
        symbol: Instrument symbol
        timestamp: Bar open time (UTC)
        open: Opening price
        high: Highest price
        low: Lowest price
        close: Closing price
        volume: Traded volume
        timeframe: Bar duration (e.g. "1d")
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str = Field(..., description="Instrument symbol")
    timestamp: datetime = Field(..., description="Bar timestamp")
    open: Decimal = Field(..., gt=0, description="Open price")
    high: Decimal = Field(..., gt=0, description="High price")
    low: Decimal = Field(..., gt=0, description="Low price")
    close: Decimal = Field(..., gt=0, description="Close price")
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="Volume")
    timeframe: str = Field(default="1d", description="Bar timeframe")

    @field_validator("low")
    @classmethod
    def low_lte_high(cls, v: Decimal, info) -> Decimal:
        high = info.data.get("high")
        if high is not None and v > high:
            raise ValueError(f"Low ({v}) cannot be above high ({high})")
        return v

    @property
    def range(self) -> Decimal:
        """High-low range of the bar."""
        return self.high - self.low


# =============================================================================
# Rule Models
# =============================================================================

class Condition(BaseModel):
    """A single predicate comparing a context field against a literal.

    ``logical_connector`` governs how the *next* condition combines with the
    running result, not how this one combines with the previous.

    Fields are optional so that drafts can be validated and reported on
    instead of failing construction.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    field: Optional[str] = Field(default=None, description="Field selector, e.g. 'technical.rsi'")
    operator: Optional[ConditionOperator] = Field(default=None, description="Comparison operator")
    value: Any = Field(default=None, description="Literal to compare against")
    logical_connector: LogicalConnector = Field(
        default=LogicalConnector.AND, description="Connector applied to the next condition"
    )


class Action(BaseModel):
    """An order intent a triggered rule implies.

    Attributes:
        type: Buy or sell
        sizing_method: Algorithm used to turn the intent into a quantity
        size_value: Dollar amount (fixed) or percent of portfolio (percentage)
        price_type: Market, limit or stop
        price_offset: Added to the current price for limit/stop orders
        params: Optional sizing inputs (win_rate, avg_win, volatility, ...)
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    type: Optional[OrderSide] = Field(default=None, description="Order side")
    sizing_method: Optional[SizingMethod] = Field(default=None, description="Sizing method")
    size_value: Optional[Decimal] = Field(default=None, description="Sizing amount")
    price_type: PriceType = Field(default=PriceType.MARKET, description="Price type")
    price_offset: Decimal = Field(default=Decimal("0"), description="Offset for limit/stop")
    params: Dict[str, Any] = Field(default_factory=dict, description="Extra sizing inputs")


class TradingRule(BaseModel):
    """A named, prioritized condition-to-action mapping.

    Attributes:
        id: Rule identifier
        portfolio_id: Portfolio the rule trades
        name: Operator-facing name
        is_active: Inactive rules never trigger
        priority: Higher numbers are kept first; None means 0
        rule_type: entry, exit or risk
        conditions: Predicates folded left to right
        actions: Order intents produced when the rule triggers
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()), description="Rule ID")
    portfolio_id: str = Field(..., description="Owning portfolio")
    name: str = Field(default="", description="Rule name")
    is_active: bool = Field(default=True, description="Whether the rule is evaluated")
    priority: Optional[int] = Field(default=None, description="Conflict-resolution priority")
    rule_type: RuleType = Field(default=RuleType.ENTRY, description="Rule category")
    conditions: List[Condition] = Field(default_factory=list, description="Conditions")
    actions: List[Action] = Field(default_factory=list, description="Actions")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Last update")

    @property
    def effective_priority(self) -> int:
        return self.priority if self.priority is not None else 0


# =============================================================================
# Trading Context
# =============================================================================

class PositionSnapshot(BaseModel):
    """A held position as seen by rules and risk checks."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str = Field(..., description="Instrument symbol")
    quantity: Decimal = Field(..., ge=0, description="Held quantity")
    average_price: Decimal = Field(..., ge=0, description="Average entry price")
    current_price: Optional[Decimal] = Field(default=None, description="Latest mark price")

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.average_price

    @property
    def current_value(self) -> Decimal:
        price = self.current_price if self.current_price is not None else self.average_price
        return self.quantity * price

    @property
    def pnl_percentage(self) -> Decimal:
        """Unrealized P&L as a percentage of cost basis."""
        if self.cost_basis == 0:
            return Decimal("0")
        return (self.current_value - self.cost_basis) / self.cost_basis * 100


class PortfolioSnapshot(BaseModel):
    """Cash, total value and positions reported by the brokerage."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_id: str = Field(..., description="Portfolio ID")
    cash: Decimal = Field(..., description="Available cash")
    total_value: Decimal = Field(..., description="Cash plus marked positions")
    positions: List[PositionSnapshot] = Field(default_factory=list, description="Open positions")

    def position_for(self, symbol: str) -> Optional[PositionSnapshot]:
        for position in self.positions:
            if position.symbol == symbol and position.quantity > 0:
                return position
        return None

    @property
    def open_position_count(self) -> int:
        return sum(1 for p in self.positions if p.quantity > 0)


class Recommendation(BaseModel):
    """Opaque upstream signal (e.g. an ML model's BUY/SELL/HOLD)."""
    id: Optional[str] = Field(default=None, description="Recommendation ID")
    type: str = Field(..., description="Recommendation type, e.g. BUY")
    confidence: float = Field(..., ge=0, le=1, description="Confidence 0-1")
    reasoning: str = Field(default="", description="Free-text rationale")


class TechnicalIndicators(BaseModel):
    """Indicator values available to rule conditions."""
    rsi: Optional[float] = None
    macd: Optional[float] = None
    volume: Optional[float] = None
    volatility: Optional[float] = None


class TradingContext(BaseModel):
    """Ephemeral snapshot a rule is evaluated against. Never persisted."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str = Field(..., description="Symbol under evaluation")
    current_price: Decimal = Field(..., description="Current price")
    portfolio_value: Decimal = Field(..., description="Total portfolio value")
    cash_balance: Decimal = Field(..., description="Available cash")
    positions: List[PositionSnapshot] = Field(default_factory=list)
    recommendation: Optional[Recommendation] = None
    technical_indicators: Optional[TechnicalIndicators] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def position_for(self, symbol: Optional[str] = None) -> Optional[PositionSnapshot]:
        symbol = symbol or self.symbol
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return None

    @classmethod
    def from_portfolio(
        cls,
        portfolio: PortfolioSnapshot,
        symbol: str,
        current_price: Decimal,
        **kwargs: Any,
    ) -> "TradingContext":
        return cls(
            symbol=symbol,
            current_price=current_price,
            portfolio_value=portfolio.total_value,
            cash_balance=portfolio.cash,
            positions=list(portfolio.positions),
            **kwargs,
        )


class ActionResult(BaseModel):
    """Unexecuted order intent computed from a rule action."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    type: Optional[OrderSide] = None
    symbol: str
    quantity: Decimal = Decimal("0")
    price: Decimal = Decimal("0")
    price_type: PriceType = PriceType.MARKET
    dollar_amount: Decimal = Decimal("0")
    reasoning: str = ""
    rule_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        return self.error is None and self.type is not None and self.quantity > 0


# =============================================================================
# Sizing Models
# =============================================================================

class PositionSizeRequest(BaseModel):
    """Inputs to the position sizer."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_value: Decimal = Field(..., ge=0)
    current_price: Decimal
    symbol: str = ""
    available_capital: Optional[Decimal] = Field(
        default=None, description="Cash ceiling; defaults to portfolio value"
    )
    held_quantity: Decimal = Field(default=Decimal("0"), ge=0)
    volatility: Optional[float] = None
    win_rate: Optional[float] = None
    avg_win: Optional[float] = None
    avg_loss: Optional[float] = None


class PositionSizeResult(BaseModel):
    """Concrete quantity produced by a sizing method."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    quantity: Decimal
    dollar_amount: Decimal
    percentage_of_portfolio: Decimal
    reasoning: str
    method: SizingMethod


# =============================================================================
# Execution Models
# =============================================================================

class TradeRequest(BaseModel):
    """A sized trade intent handed to the execution pipeline."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal = Field(..., gt=0)
    price: Optional[Decimal] = Field(default=None, description="Limit/trigger price")
    price_type: PriceType = PriceType.MARKET
    rule_id: Optional[str] = None
    recommendation_id: Optional[str] = None
    strategy_id: Optional[str] = None
    volatility: Optional[float] = Field(default=None, description="Used by the volatility warning")
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AutoTrade(BaseModel):
    """A persisted order with an explicit lifecycle.

    PENDING -> EXECUTING -> EXECUTED | FAILED, and PENDING -> CANCELLED.
    Terminal states are immutable.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()), description="Order ID")
    portfolio_id: str = Field(..., description="Portfolio ID")
    symbol: str = Field(..., description="Instrument symbol")
    side: OrderSide = Field(..., description="Buy or sell")
    quantity: Decimal = Field(..., gt=0, description="Requested quantity")
    price_type: PriceType = Field(default=PriceType.MARKET)
    trigger_price: Optional[Decimal] = Field(default=None, description="Price at submission")
    executed_price: Optional[Decimal] = None
    executed_quantity: Optional[Decimal] = None
    status: OrderStatus = Field(default=OrderStatus.PENDING)
    rule_id: Optional[str] = None
    recommendation_id: Optional[str] = None
    strategy_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, status: OrderStatus) -> None:
        """Move to ``status`` if the lifecycle allows it."""
        if status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Order {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_at = datetime.utcnow()

    def mark_executed(self, price: Decimal, quantity: Decimal,
                      executed_at: Optional[datetime] = None) -> None:
        self.transition_to(OrderStatus.EXECUTED)
        self.executed_price = price
        self.executed_quantity = quantity
        self.executed_at = executed_at or datetime.utcnow()

    def mark_failed(self, reason: str) -> None:
        self.transition_to(OrderStatus.FAILED)
        self.failure_reason = reason


class Fill(BaseModel):
    """Brokerage confirmation of an executed trade."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    side: OrderSide
    price: Decimal
    quantity: Decimal
    commission: Decimal = Decimal("0")
    realized_pnl: Optional[Decimal] = None
    executed_at: datetime = Field(default_factory=datetime.utcnow)


class TradeResult(BaseModel):
    """Outcome of one pass through the execution pipeline."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    success: bool
    trade_id: str
    status: OrderStatus
    executed_price: Optional[Decimal] = None
    executed_quantity: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None
    error: Optional[str] = None
    adjusted_quantity: Optional[Decimal] = None


# =============================================================================
# Strategy / Deployment Models
# =============================================================================

class StrategyRiskLimits(BaseModel):
    """Per-deployment risk limits.

    Attributes:
        max_drawdown: Pause when drawdown exceeds this percent
        max_position_size: Max order value as percent of current value
        daily_loss_limit: Pause when today's loss exceeds this many dollars
        correlation_limit: Max allowed correlation between holdings
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    max_drawdown: Decimal = Field(default=Decimal("10"), gt=0, le=100)
    max_position_size: Decimal = Field(default=Decimal("10"), gt=0, le=100)
    daily_loss_limit: Decimal = Field(default=Decimal("1000"), ge=0)
    correlation_limit: Decimal = Field(default=Decimal("0.7"), ge=0, le=1)


class NotificationSettings(BaseModel):
    enabled: bool = True
    on_trade: bool = True
    on_error: bool = True
    on_risk_breach: bool = True


class DeploymentConfig(BaseModel):
    """How a strategy is deployed."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    mode: TradingMode = Field(default=TradingMode.PAPER)
    portfolio_id: str = Field(..., description="Portfolio to trade")
    user_id: Optional[str] = Field(default=None, description="Owning user")
    initial_capital: Decimal = Field(..., gt=0)
    max_positions: int = Field(default=10, ge=1)
    risk_limits: StrategyRiskLimits = Field(default_factory=StrategyRiskLimits)
    execution_frequency: ExecutionFrequency = Field(default=ExecutionFrequency.HOUR)
    symbols: List[str] = Field(default_factory=list)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


class StrategyDefinition(BaseModel):
    """A deployable bundle of rules."""
    id: str = Field(..., description="Strategy ID")
    name: str = Field(default="", description="Strategy name")
    description: str = ""
    user_id: Optional[str] = None
    rules: List[TradingRule] = Field(default_factory=list)
    symbols: List[str] = Field(default_factory=list)


class InstancePerformance(BaseModel):
    """Rolling performance of a live instance. Percentages are 0-100."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_return: Decimal = Decimal("0")
    daily_return: Decimal = Decimal("0")
    sharpe_ratio: Decimal = Decimal("0")
    max_drawdown: Decimal = Decimal("0")
    current_drawdown: Decimal = Decimal("0")
    win_rate: Decimal = Decimal("0")
    total_trades: int = 0
    profitable_trades: int = 0
    closed_trades: int = 0
    current_value: Decimal = Decimal("0")
    peak_value: Decimal = Decimal("0")
    day_start_value: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    realized_pnl_today: Decimal = Decimal("0")
    last_updated: datetime = Field(default_factory=datetime.utcnow)


class StrategyInstance(BaseModel):
    """One live deployment of a strategy.

    Status moves only along running <-> paused, running/paused -> stopped and
    running -> error. Stopped and error are terminal.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(..., description="Instance ID")
    strategy_id: str = Field(..., description="Deployed strategy ID")
    strategy: StrategyDefinition
    config: DeploymentConfig
    status: InstanceStatus = Field(default=InstanceStatus.RUNNING)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    paused_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    performance: InstancePerformance = Field(default_factory=InstancePerformance)
    error_count: int = 0
    last_error: Optional[str] = None
    stop_reason: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == InstanceStatus.RUNNING

    @property
    def portfolio_id(self) -> str:
        return self.config.portfolio_id

    def transition_to(self, status: InstanceStatus) -> None:
        if status not in INSTANCE_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Strategy {self.strategy_id} cannot move from "
                f"{self.status.value} to {status.value}"
            )
        self.status = status

    def pause(self) -> None:
        self.transition_to(InstanceStatus.PAUSED)
        self.paused_at = datetime.utcnow()

    def resume(self) -> None:
        self.transition_to(InstanceStatus.RUNNING)
        self.paused_at = None

    def stop(self, reason: str) -> None:
        self.transition_to(InstanceStatus.STOPPED)
        self.stopped_at = datetime.utcnow()
        self.stop_reason = reason

    def record_error(self, error_message: str) -> int:
        """Record a tick error and return the consecutive error count."""
        self.error_count += 1
        self.last_error = error_message
        return self.error_count

    def clear_errors(self) -> None:
        self.error_count = 0


# =============================================================================
# Backtest Models
# =============================================================================

class TradeDetail(BaseModel):
    """One leg in the backtest ledger (entry or exit)."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    side: OrderSide
    quantity: Decimal
    entry_price: Decimal
    exit_price: Optional[Decimal] = None
    commission: Decimal = Decimal("0")
    pnl: Decimal
    timestamp: datetime
    is_exit: bool = False


class PerformanceMetrics(BaseModel):
    """Return and trade statistics. Percentages are 0-100."""
    total_return: float = 0.0
    annualized_return: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0


class RiskMetrics(BaseModel):
    """Tail-risk and volatility statistics.

    volatility, var_95 and expected_shortfall are percentages of equity;
    beta and alpha stay at their neutral values without a benchmark series.
    """
    volatility: float = 0.0
    var_95: float = 0.0
    expected_shortfall: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    beta: float = 1.0
    alpha: float = 0.0


class BacktestStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BacktestParams(BaseModel):
    """Inputs for one backtest run."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    start_date: datetime
    end_date: datetime
    initial_capital: Decimal = Field(..., gt=0)
    symbols: List[str] = Field(..., min_length=1)
    commission: Decimal = Field(default=Decimal("0.001"), ge=0, lt=1)
    slippage: Decimal = Field(default=Decimal("0.0005"), ge=0, lt=1)

    @field_validator("end_date")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        start = info.data.get("start_date")
        if start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v
