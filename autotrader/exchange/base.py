"""Collaborator interfaces for market data and order execution."""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from autotrader.core.models import (
    Fill, MarketData, OrderSide, PortfolioSnapshot, TechnicalIndicators,
)


class MarketDataProvider(ABC):
    """Source of live prices and historical bars."""

    @abstractmethod
    async def current_price(self, symbol: str) -> Decimal:
        """Latest price for ``symbol``.

        Must not raise on lookup failure; implementations degrade to a
        documented default instead. A non-positive price means "unknown".
        """

    @abstractmethod
    async def historical_bars(
        self,
        symbols: List[str],
        start: datetime,
        end: datetime,
    ) -> List[MarketData]:
        """Bars for ``symbols`` in [start, end], ordered by timestamp."""

    async def technical_indicators(self, symbol: str) -> Optional[TechnicalIndicators]:
        """Indicator snapshot for ``symbol``, if the provider computes one."""
        return None


class BrokerageClient(ABC):
    """Executes trades and reports portfolio state."""

    @abstractmethod
    async def execute(
        self,
        portfolio_id: str,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> Fill:
        """Fill a trade or raise ExecutionFailure."""

    @abstractmethod
    async def portfolio_snapshot(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        """Cash, total value and positions, or None for an unknown portfolio."""
