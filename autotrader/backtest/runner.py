"""
Backtest Runner.

Loads bars through the market-data collaborator, runs the BacktestEngine
and persists every run, successful or not, through the Database.
"""

import time
from datetime import datetime
from typing import List, Optional

import structlog

from autotrader.backtest.engine import BacktestEngine, BacktestResult
from autotrader.core.exceptions import BacktestNotFoundError
from autotrader.core.models import BacktestParams, BacktestStatus, StrategyDefinition
from autotrader.exchange.base import MarketDataProvider

logger = structlog.get_logger(__name__)


class BacktestRunner:
    """High-level backtest interface with result storage."""

    def __init__(
        self,
        market_data: MarketDataProvider,
        database=None,
        engine: Optional[BacktestEngine] = None,
    ):
        self.market_data = market_data
        self.database = database
        self.engine = engine or BacktestEngine()

    async def run_backtest(
        self,
        strategy: StrategyDefinition,
        params: BacktestParams,
    ) -> BacktestResult:
        """
        Run and persist a backtest.

        The run is stored as ``running`` first. A failure is stored as
        ``failed`` with its message and then re-raised.
        """
        started = time.monotonic()
        pending = BacktestResult(
            strategy_id=strategy.id,
            params=params,
            initial_capital=params.initial_capital,
        )
        await self._persist(pending)

        logger.info(
            "backtest_runner.starting",
            backtest_id=pending.id,
            strategy_id=strategy.id,
            start=params.start_date.isoformat(),
            end=params.end_date.isoformat(),
            capital=str(params.initial_capital),
        )

        try:
            bars = await self.market_data.historical_bars(
                params.symbols, params.start_date, params.end_date
            )
            result = await self.engine.run(strategy, params, bars)
        except Exception as e:
            pending.status = BacktestStatus.FAILED
            pending.error_message = str(e)
            pending.completed_at = datetime.utcnow()
            pending.execution_time_ms = int((time.monotonic() - started) * 1000)
            await self._persist(pending)
            logger.error(
                "backtest_runner.failed",
                backtest_id=pending.id,
                strategy_id=strategy.id,
                error=str(e),
            )
            raise

        result.id = pending.id
        result.started_at = pending.started_at
        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        await self._persist(result)

        logger.info(
            "backtest_runner.complete",
            backtest_id=result.id,
            total_return=f"{result.total_return_pct:.2f}%",
            execution_time_ms=result.execution_time_ms,
        )
        return result

    async def get_result(self, backtest_id: str) -> BacktestResult:
        result = await self._require_database().get_backtest_result(backtest_id)
        if result is None:
            raise BacktestNotFoundError("Backtest result not found")
        return result

    async def list_results(self, strategy_id: str, limit: int = 50) -> List[BacktestResult]:
        """Results for a strategy, newest first."""
        return await self._require_database().get_backtest_results(strategy_id, limit=limit)

    async def delete_result(self, backtest_id: str) -> None:
        if not await self._require_database().delete_backtest_result(backtest_id):
            raise BacktestNotFoundError("Backtest result not found")

    async def _persist(self, result: BacktestResult):
        if self.database is not None:
            await self.database.save_backtest_result(result)

    def _require_database(self):
        if self.database is None:
            raise RuntimeError("BacktestRunner has no database configured")
        return self.database
