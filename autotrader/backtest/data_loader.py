"""
Historical Data Loader for Backtesting.

Downloads OHLCV bars through CCXT and caches them locally as CSV so that
repeated backtests over the same window do not hit the exchange.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import ccxt.async_support as ccxt
import pandas as pd
import structlog

from autotrader.core.config import backtest_config
from autotrader.core.exceptions import MarketDataError
from autotrader.core.models import MarketData
from autotrader.utils.retry import with_retry

logger = structlog.get_logger(__name__)


def _to_epoch_ms(value: datetime) -> int:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)


class HistoricalDataLoader:
    """
    Load historical market data for backtesting.

    Features:
    - Downloads from any CCXT exchange
    - Caches data locally (CSV format)
    - Retries transient exchange errors with backoff
    - Reads user-supplied CSV files with the same columns
    """

    FETCH_LIMIT = 1000  # Max candles per request

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        exchange_id: Optional[str] = None,
        timeframe: Optional[str] = None,
    ):
        self.cache_dir = Path(cache_dir or backtest_config.data_cache_dir)
        self.exchange_id = exchange_id or backtest_config.exchange_id
        self.timeframe = timeframe or backtest_config.timeframe
        self.exchange = None

    async def initialize(self):
        """Initialize exchange connection."""
        if self.exchange is None:
            self.exchange = getattr(ccxt, self.exchange_id)(
                {
                    "enableRateLimit": True,
                    "options": {
                        "defaultType": "spot",
                    },
                }
            )
            logger.info("data_loader.exchange_initialized", exchange=self.exchange_id)

    async def close(self):
        """Close exchange connection."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None

    async def load_data(
        self,
        symbol: str,
        start_date: datetime,
        end_date: datetime,
        use_cache: bool = True,
    ) -> List[MarketData]:
        """
        Load historical data for a symbol.

        Args:
            symbol: Trading pair (e.g., 'BTC/USDT')
            start_date: Start of data range (UTC)
            end_date: End of data range (UTC, inclusive)
            use_cache: Whether to use cached data

        Returns:
            List of MarketData objects in timestamp order

        Raises:
            MarketDataError: If the exchange keeps failing after retries
        """
        cache_file = self._get_cache_path(symbol, start_date, end_date)

        if use_cache and cache_file.exists():
            logger.info("data_loader.using_cache", symbol=symbol, file=str(cache_file))
            return self.load_from_csv(cache_file)

        logger.info(
            "data_loader.downloading",
            symbol=symbol,
            start=start_date.isoformat(),
            end=end_date.isoformat(),
        )

        await self.initialize()

        end_ms = _to_epoch_ms(end_date)
        current_since = _to_epoch_ms(start_date)
        all_ohlcv = []

        while True:
            try:
                ohlcv = await self._fetch_batch(symbol, current_since)
            except ccxt.BaseError as e:
                logger.error("data_loader.fetch_error", symbol=symbol, error=str(e))
                raise MarketDataError(f"Failed to download {symbol}: {e}") from e

            if not ohlcv:
                break

            all_ohlcv.extend(candle for candle in ohlcv if candle[0] <= end_ms)

            last_timestamp = ohlcv[-1][0]
            if last_timestamp >= end_ms:
                break

            current_since = last_timestamp + 1

            # Rate limit protection
            await asyncio.sleep(0.1)

        market_data = self._ohlcv_to_market_data(all_ohlcv, symbol)

        if market_data:
            self._save_to_cache(market_data, cache_file)

        logger.info(
            "data_loader.complete",
            symbol=symbol,
            records=len(market_data),
            date_range=(
                f"{market_data[0].timestamp} to {market_data[-1].timestamp}"
                if market_data
                else "N/A"
            ),
        )

        return market_data

    @with_retry()
    async def _fetch_batch(self, symbol: str, since: int) -> List[List]:
        return await self.exchange.fetch_ohlcv(
            symbol, timeframe=self.timeframe, since=since, limit=self.FETCH_LIMIT
        )

    async def load_multi_symbol(
        self, symbols: List[str], start_date: datetime, end_date: datetime
    ) -> Dict[str, List[MarketData]]:
        """
        Load data for multiple symbols.

        A symbol that fails to load maps to an empty list so one bad symbol
        does not abort the others.
        """
        results = {}

        for symbol in symbols:
            try:
                results[symbol] = await self.load_data(symbol, start_date, end_date)
            except MarketDataError as e:
                logger.error("data_loader.symbol_failed", symbol=symbol, error=str(e))
                results[symbol] = []

        return results

    def _ohlcv_to_market_data(self, ohlcv: List[List], symbol: str) -> List[MarketData]:
        """Convert CCXT OHLCV format to MarketData objects."""
        market_data = []

        for candle in ohlcv:
            # OHLCV format: [timestamp, open, high, low, close, volume]
            market_data.append(
                MarketData(
                    symbol=symbol,
                    timestamp=_from_epoch_ms(candle[0]),
                    open=Decimal(str(candle[1])),
                    high=Decimal(str(candle[2])),
                    low=Decimal(str(candle[3])),
                    close=Decimal(str(candle[4])),
                    volume=Decimal(str(candle[5] or 0)),
                    timeframe=self.timeframe,
                )
            )

        return market_data

    def _get_cache_path(
        self, symbol: str, start_date: datetime, end_date: datetime
    ) -> Path:
        """Generate cache file path."""
        safe_symbol = symbol.replace("/", "_")
        start_str = start_date.strftime("%Y%m%d")
        end_str = end_date.strftime("%Y%m%d")

        filename = f"{safe_symbol}_{self.timeframe}_{start_str}_{end_str}.csv"
        return self.cache_dir / filename

    def _save_to_cache(self, data: List[MarketData], filepath: Path):
        """Save data to cache file."""
        if not data:
            return

        filepath.parent.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame(
            [
                {
                    "timestamp": md.timestamp.isoformat(),
                    "symbol": md.symbol,
                    "open": float(md.open),
                    "high": float(md.high),
                    "low": float(md.low),
                    "close": float(md.close),
                    "volume": float(md.volume),
                }
                for md in data
            ]
        )
        df.to_csv(filepath, index=False)
        logger.info("data_loader.cached", file=str(filepath), records=len(df))

    def load_from_csv(self, filepath: Path) -> List[MarketData]:
        """Load bars from a CSV with timestamp,symbol,open,high,low,close,volume columns."""
        df = pd.read_csv(filepath)
        df = df.sort_values(["timestamp", "symbol"])

        return [
            MarketData(
                symbol=row["symbol"],
                timestamp=datetime.fromisoformat(str(row["timestamp"])),
                open=Decimal(str(row["open"])),
                high=Decimal(str(row["high"])),
                low=Decimal(str(row["low"])),
                close=Decimal(str(row["close"])),
                volume=Decimal(str(row["volume"])),
                timeframe=self.timeframe,
            )
            for _, row in df.iterrows()
        ]
