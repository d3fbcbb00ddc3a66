"""
Backtest performance and risk metrics.

All metrics are computed once, at the end of a run, from the virtual
portfolio's equity curve, drawdown curve and trade ledger. Returns are
period-over-period changes of the equity curve. Percent-valued metrics are
on a 0-100 scale.
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from autotrader.core.config import backtest_config
from autotrader.core.models import PerformanceMetrics, RiskMetrics, TradeDetail


def equity_returns(equity_curve: List[Dict[str, Any]]) -> np.ndarray:
    """Period returns of the equity curve, first (undefined) point dropped."""
    if len(equity_curve) < 2:
        return np.array([], dtype=float)

    equity = pd.Series([float(point["equity"]) for point in equity_curve])
    returns = equity.pct_change().iloc[1:]
    returns = returns.replace([np.inf, -np.inf], np.nan).fillna(0.0)
    return returns.to_numpy(dtype=float)


def sharpe_ratio(returns: np.ndarray, periods_per_year: int = 252) -> float:
    """Annualized mean return over annualized volatility, zero risk-free rate.

    Both legs scale by the same factor, so the result equals mean / std of the
    per-period returns.
    """
    if returns.size == 0:
        return 0.0
    variance = float(np.var(returns))
    if variance <= 0:
        return 0.0
    annualized_mean = float(np.mean(returns)) * math.sqrt(periods_per_year)
    annualized_std = math.sqrt(variance * periods_per_year)
    return annualized_mean / annualized_std


def sortino_ratio(returns: np.ndarray, periods_per_year: int = 252) -> float:
    downside = returns[returns < 0]
    if downside.size == 0:
        return 0.0
    downside_std = float(np.sqrt(np.mean(downside ** 2)))
    if downside_std <= 0:
        return 0.0
    return float(np.mean(returns) / downside_std * math.sqrt(periods_per_year))


def value_at_risk(returns: np.ndarray, confidence: float = 0.95) -> float:
    """Historical VaR: the sorted return at index floor((1 - confidence) * n)."""
    if returns.size == 0:
        return 0.0
    ordered = np.sort(returns)
    index = int(math.floor((1 - confidence) * ordered.size))
    return float(ordered[index]) if index < ordered.size else 0.0


def expected_shortfall(returns: np.ndarray, confidence: float = 0.95) -> float:
    """Mean of the sorted returns strictly below the VaR index."""
    if returns.size == 0:
        return 0.0
    ordered = np.sort(returns)
    index = int(math.floor((1 - confidence) * ordered.size))
    tail = ordered[:index]
    return float(np.mean(tail)) if tail.size else 0.0


def max_drawdown(drawdown_curve: List[Dict[str, Any]]) -> float:
    if not drawdown_curve:
        return 0.0
    return float(max(point["drawdown"] for point in drawdown_curve))


def annualized_return(
    initial_capital: Decimal,
    final_capital: Decimal,
    start: datetime,
    end: datetime,
) -> float:
    """Total return compounded to a 365-day year over the run's calendar span."""
    if initial_capital <= 0:
        return 0.0
    growth = float(final_capital / initial_capital)
    if growth <= 0:
        return -100.0
    days = max((end - start).total_seconds() / 86400, 1.0)
    return (growth ** (365.0 / days) - 1) * 100


def _longest_streak(pnls: List[float], winning: bool) -> int:
    longest = 0
    current = 0
    for pnl in pnls:
        if (pnl > 0) if winning else (pnl < 0):
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def calculate_performance_metrics(
    trades: List[TradeDetail],
    equity_curve: List[Dict[str, Any]],
    drawdown_curve: List[Dict[str, Any]],
    initial_capital: Decimal,
    final_capital: Decimal,
    start: datetime,
    end: datetime,
    periods_per_year: Optional[int] = None,
) -> PerformanceMetrics:
    """Return and trade statistics.

    Trade statistics are taken over exit legs only; entry legs carry just
    their commission as P&L and would otherwise count as losses.
    """
    periods = periods_per_year or backtest_config.trading_days_per_year
    returns = equity_returns(equity_curve)

    total_return = 0.0
    if initial_capital > 0:
        total_return = float((final_capital - initial_capital) / initial_capital * 100)

    pnls = [float(t.pnl) for t in trades if t.is_exit]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        profit_factor = math.inf
    else:
        profit_factor = 0.0

    return PerformanceMetrics(
        total_return=total_return,
        annualized_return=annualized_return(initial_capital, final_capital, start, end),
        sharpe_ratio=sharpe_ratio(returns, periods),
        max_drawdown=max_drawdown(drawdown_curve),
        win_rate=len(wins) / len(pnls) * 100 if pnls else 0.0,
        profit_factor=profit_factor,
        total_trades=len(pnls),
        winning_trades=len(wins),
        losing_trades=len(losses),
        average_win=gross_profit / len(wins) if wins else 0.0,
        average_loss=gross_loss / len(losses) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        consecutive_wins=_longest_streak(pnls, winning=True),
        consecutive_losses=_longest_streak(pnls, winning=False),
    )


def calculate_risk_metrics(
    equity_curve: List[Dict[str, Any]],
    performance: PerformanceMetrics,
    confidence: Optional[float] = None,
    periods_per_year: Optional[int] = None,
) -> RiskMetrics:
    confidence = confidence or backtest_config.var_confidence
    periods = periods_per_year or backtest_config.trading_days_per_year
    returns = equity_returns(equity_curve)

    volatility = 0.0
    if returns.size:
        volatility = math.sqrt(float(np.var(returns)) * periods) * 100

    calmar = 0.0
    if performance.max_drawdown > 0:
        calmar = performance.annualized_return / performance.max_drawdown

    return RiskMetrics(
        volatility=volatility,
        var_95=value_at_risk(returns, confidence) * 100,
        expected_shortfall=expected_shortfall(returns, confidence) * 100,
        sortino_ratio=sortino_ratio(returns, periods),
        calmar_ratio=calmar,
    )
