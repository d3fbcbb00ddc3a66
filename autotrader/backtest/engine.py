"""
Backtest Simulation Engine.

Replays a strategy's rules over historical bars:
- Bars are processed in (timestamp, symbol) order
- Signals come from the same RuleEngine used for live trading
- Fills go through a virtual portfolio with slippage and commission
- Performance and risk metrics are computed once, at the end
"""

import asyncio
import math
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import numpy as np
import structlog

from autotrader.backtest.metrics import calculate_performance_metrics, calculate_risk_metrics
from autotrader.backtest.portfolio import BacktestPortfolio, BacktestSignal, SignalType
from autotrader.core.config import BacktestConfig, backtest_config
from autotrader.core.exceptions import BacktestError
from autotrader.core.models import (
    ActionResult, BacktestParams, BacktestStatus, MarketData, OrderSide,
    PerformanceMetrics, PriceType, RiskMetrics, StrategyDefinition,
    TechnicalIndicators, TradeDetail, TradingContext,
)
from autotrader.rules.engine import RuleEngine

logger = structlog.get_logger(__name__)

PROGRESS_INTERVAL = 1000


@dataclass
class BacktestResult:
    """Complete backtest results."""

    strategy_id: str
    params: BacktestParams
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: BacktestStatus = BacktestStatus.RUNNING

    initial_capital: Decimal = Decimal("0")
    final_capital: Optional[Decimal] = None

    performance: Optional[PerformanceMetrics] = None
    risk: Optional[RiskMetrics] = None

    trades: List[TradeDetail] = field(default_factory=list)
    equity_curve: List[Dict[str, Any]] = field(default_factory=list)
    drawdown_curve: List[Dict[str, Any]] = field(default_factory=list)

    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def total_return_pct(self) -> float:
        return self.performance.total_return if self.performance else 0.0


class BacktestEngine:
    """
    Drives a BacktestPortfolio from a historical bar series.

    The engine keeps no state between runs; each ``run`` builds a fresh
    portfolio and indicator history.
    """

    def __init__(
        self,
        rule_engine: Optional[RuleEngine] = None,
        config: Optional[BacktestConfig] = None,
    ):
        self.rule_engine = rule_engine or RuleEngine()
        self.config = config or backtest_config

    async def run(
        self,
        strategy: StrategyDefinition,
        params: BacktestParams,
        bars: List[MarketData],
    ) -> BacktestResult:
        """
        Run a backtest simulation.

        Args:
            strategy: Strategy whose rules generate signals
            params: Date range, capital, symbols and cost model
            bars: Historical bars; anything outside the range or symbols is ignored

        Returns:
            Completed BacktestResult

        Raises:
            BacktestError: If no bars fall inside the requested window
        """
        started = time.monotonic()
        result = BacktestResult(
            strategy_id=strategy.id,
            params=params,
            initial_capital=params.initial_capital,
        )

        symbols = set(params.symbols)
        series = sorted(
            (
                bar for bar in bars
                if bar.symbol in symbols and params.start_date <= bar.timestamp <= params.end_date
            ),
            key=lambda b: (b.timestamp, b.symbol),
        )
        if not series:
            raise BacktestError("No historical data available for the specified period")

        logger.info(
            "backtest.starting",
            strategy_id=strategy.id,
            start=params.start_date.isoformat(),
            end=params.end_date.isoformat(),
            symbols=params.symbols,
            bars=len(series),
        )

        portfolio = BacktestPortfolio(
            initial_capital=params.initial_capital,
            commission=params.commission,
            slippage=params.slippage,
            start_time=params.start_date,
        )
        rules = self.rule_engine.prioritize_rules(strategy.rules)
        closes: Dict[str, List[float]] = defaultdict(list)

        for i, bar in enumerate(series):
            if i and i % PROGRESS_INTERVAL == 0:
                logger.info(
                    "backtest.progress",
                    current=bar.timestamp.isoformat(),
                    progress=f"{i / len(series) * 100:.1f}%",
                )
                await asyncio.sleep(0)

            history = closes[bar.symbol]
            history.append(float(bar.close))

            signal = self._generate_signal(rules, bar, history, portfolio)
            if signal is not None:
                portfolio.process_signal(signal)

            portfolio.update(bar)

        result.final_capital = portfolio.equity
        result.trades = list(portfolio.trades)
        result.equity_curve = list(portfolio.equity_curve)
        result.drawdown_curve = list(portfolio.drawdown_curve)
        result.performance = calculate_performance_metrics(
            trades=portfolio.trades,
            equity_curve=portfolio.equity_curve,
            drawdown_curve=portfolio.drawdown_curve,
            initial_capital=params.initial_capital,
            final_capital=portfolio.equity,
            start=params.start_date,
            end=params.end_date,
            periods_per_year=self.config.trading_days_per_year,
        )
        result.risk = calculate_risk_metrics(
            portfolio.equity_curve,
            result.performance,
            confidence=self.config.var_confidence,
            periods_per_year=self.config.trading_days_per_year,
        )
        result.status = BacktestStatus.COMPLETED
        result.completed_at = datetime.utcnow()
        result.execution_time_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "backtest.complete",
            strategy_id=strategy.id,
            total_return=f"{result.performance.total_return:.2f}%",
            max_drawdown=f"{result.performance.max_drawdown:.2f}%",
            sharpe=result.performance.sharpe_ratio,
            trades=result.performance.total_trades,
        )

        return result

    # =========================================================================
    # Signals
    # =========================================================================

    def _generate_signal(
        self,
        rules,
        bar: MarketData,
        history: List[float],
        portfolio: BacktestPortfolio,
    ) -> Optional[BacktestSignal]:
        context = TradingContext(
            symbol=bar.symbol,
            current_price=bar.close,
            portfolio_value=portfolio.equity,
            cash_balance=portfolio.cash,
            positions=portfolio.position_snapshots(),
            technical_indicators=TechnicalIndicators(
                rsi=self.calculate_rsi(history, self.config.rsi_period),
                volatility=self.calculate_volatility(history, self.config.volatility_window),
                volume=float(bar.volume),
            ),
            timestamp=bar.timestamp,
        )

        triggered = [rule for rule in rules if self.rule_engine.evaluate(rule, context)]
        winners = self.rule_engine.conflict_resolution(triggered)
        if not winners:
            return None

        rule = winners[0]
        for action in self.rule_engine.execute_actions(rule.actions, context, rule_id=rule.id):
            if action.is_actionable:
                return self._to_signal(action, bar)
        return None

    @staticmethod
    def _to_signal(action: ActionResult, bar: MarketData) -> BacktestSignal:
        """Limit and stop intents fill at their requested price, market intents at the close."""
        price = bar.close
        if action.price_type in (PriceType.LIMIT, PriceType.STOP) and action.price > 0:
            price = action.price

        return BacktestSignal(
            type=SignalType.ENTRY if action.type == OrderSide.BUY else SignalType.EXIT,
            symbol=bar.symbol,
            quantity=action.quantity,
            price=price,
            timestamp=bar.timestamp,
            rule_id=action.rule_id,
            metadata={"reasoning": action.reasoning},
        )

    # =========================================================================
    # Indicators
    # =========================================================================

    @staticmethod
    def calculate_rsi(closes: List[float], period: int = 14) -> float:
        """Simple-average RSI over the last ``period`` changes; 50 until enough bars."""
        if len(closes) < period + 1:
            return 50.0

        changes = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
        avg_gain = float(changes[changes > 0].sum()) / period
        avg_loss = float(-changes[changes < 0].sum()) / period

        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        return 100 - 100 / (1 + rs)

    @staticmethod
    def calculate_volatility(closes: List[float], window: int = 20) -> Optional[float]:
        """Standard deviation of close-to-close returns over the last ``window`` returns."""
        if len(closes) < 3:
            return None

        prices = np.asarray(closes[-(window + 1):], dtype=float)
        returns = np.diff(prices) / prices[:-1]
        value = float(np.std(returns))
        return None if math.isnan(value) else value
