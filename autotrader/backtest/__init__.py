"""
Strategy Backtest Module.

Replays trading rules over historical bars through a virtual portfolio.

Usage:
    from autotrader.backtest import BacktestRunner, BacktestReport

    runner = BacktestRunner(market_data=provider, database=db)
    result = await runner.run_backtest(strategy, BacktestParams(
        start_date=datetime(2023, 1, 1),
        end_date=datetime(2023, 12, 31),
        initial_capital=Decimal("100000"),
        symbols=["BTC/USDT"],
    ))

    BacktestReport(result).print_full_report()
"""

from autotrader.backtest.data_loader import HistoricalDataLoader
from autotrader.backtest.engine import BacktestEngine, BacktestResult
from autotrader.backtest.portfolio import (BacktestPortfolio, BacktestPosition,
                                           BacktestSignal, SignalType)
from autotrader.backtest.report import BacktestReport
from autotrader.backtest.runner import BacktestRunner

__all__ = [
    "BacktestEngine",
    "BacktestResult",
    "BacktestPortfolio",
    "BacktestPosition",
    "BacktestSignal",
    "SignalType",
    "HistoricalDataLoader",
    "BacktestReport",
    "BacktestRunner",
]
