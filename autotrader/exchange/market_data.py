"""Market data providers.

``CcxtMarketDataProvider`` reads live tickers from a CCXT exchange and
historical bars through the cached HistoricalDataLoader. A ticker lookup
that still fails after retries degrades to the last price seen for the
symbol, or ``Decimal("0")`` when there is none; callers treat a
non-positive price as "skip this symbol for now".

``StaticMarketDataProvider`` serves prices and bars held in memory, for
paper sessions fed by another process and for tests.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import ccxt.async_support as ccxt
import structlog

from autotrader.backtest.data_loader import HistoricalDataLoader
from autotrader.core.config import MarketDataConfig, market_data_config
from autotrader.core.models import MarketData, TechnicalIndicators
from autotrader.exchange.base import MarketDataProvider
from autotrader.utils.retry import with_retry

logger = structlog.get_logger(__name__)

UNKNOWN_PRICE = Decimal("0")


class CcxtMarketDataProvider(MarketDataProvider):
    """Live prices from a CCXT exchange."""

    def __init__(
        self,
        exchange_id: Optional[str] = None,
        data_loader: Optional[HistoricalDataLoader] = None,
        config: Optional[MarketDataConfig] = None,
    ):
        self.config = config or market_data_config
        self.exchange_id = exchange_id or self.config.market_data_exchange_id
        self.data_loader = data_loader or HistoricalDataLoader(exchange_id=self.exchange_id)
        self.exchange = None
        self._last_prices: Dict[str, Decimal] = {}

    async def initialize(self):
        if self.exchange is None:
            self.exchange = getattr(ccxt, self.exchange_id)(
                {
                    "enableRateLimit": True,
                    "timeout": int(self.config.quote_timeout_seconds * 1000),
                }
            )
            logger.info("market_data.exchange_initialized", exchange=self.exchange_id)

    async def close(self):
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
        await self.data_loader.close()

    @with_retry(max_retries=market_data_config.retry_attempts,
                base_delay=market_data_config.retry_base_delay,
                max_delay=market_data_config.retry_max_delay,
                rate_limit_base_delay=market_data_config.rate_limit_base_delay,
                rate_limit_max_delay=market_data_config.rate_limit_max_delay)
    async def _fetch_ticker(self, symbol: str) -> dict:
        return await self.exchange.fetch_ticker(symbol)

    async def current_price(self, symbol: str) -> Decimal:
        try:
            await self.initialize()
            ticker = await self._fetch_ticker(symbol)
            last = ticker.get("last") or ticker.get("close")
            if last is None:
                raise ValueError(f"Ticker for {symbol} has no last price")
            price = Decimal(str(last))
            self._last_prices[symbol] = price
            return price
        except Exception as e:
            fallback = self._last_prices.get(symbol, UNKNOWN_PRICE)
            logger.warning(
                "market_data.price_lookup_failed",
                symbol=symbol,
                fallback=str(fallback),
                error=str(e),
            )
            return fallback

    async def historical_bars(
        self,
        symbols: List[str],
        start: datetime,
        end: datetime,
    ) -> List[MarketData]:
        by_symbol = await self.data_loader.load_multi_symbol(symbols, start, end)
        bars = [bar for series in by_symbol.values() for bar in series]
        bars.sort(key=lambda b: (b.timestamp, b.symbol))
        return bars


class StaticMarketDataProvider(MarketDataProvider):
    """Prices, indicators and bars held in memory."""

    def __init__(
        self,
        prices: Optional[Dict[str, Decimal]] = None,
        bars: Optional[List[MarketData]] = None,
    ):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.bars: List[MarketData] = list(bars or [])
        self.indicators: Dict[str, TechnicalIndicators] = {}

    def set_price(self, symbol: str, price: Decimal):
        self.prices[symbol] = price

    def set_indicators(self, symbol: str, indicators: TechnicalIndicators):
        self.indicators[symbol] = indicators

    async def current_price(self, symbol: str) -> Decimal:
        return self.prices.get(symbol, UNKNOWN_PRICE)

    async def historical_bars(
        self,
        symbols: List[str],
        start: datetime,
        end: datetime,
    ) -> List[MarketData]:
        wanted = set(symbols)
        bars = [
            bar for bar in self.bars
            if bar.symbol in wanted and start <= bar.timestamp <= end
        ]
        bars.sort(key=lambda b: (b.timestamp, b.symbol))
        return bars

    async def technical_indicators(self, symbol: str) -> Optional[TechnicalIndicators]:
        return self.indicators.get(symbol)
