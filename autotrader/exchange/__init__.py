"""Exchange integration: market data and brokerage collaborators."""

from autotrader.exchange.base import BrokerageClient, MarketDataProvider
from autotrader.exchange.market_data import (
    CcxtMarketDataProvider,
    StaticMarketDataProvider,
    UNKNOWN_PRICE,
)
from autotrader.exchange.paper_broker import PaperAccount, PaperBroker, PaperPosition

__all__ = [
    "BrokerageClient",
    "MarketDataProvider",
    "CcxtMarketDataProvider",
    "StaticMarketDataProvider",
    "UNKNOWN_PRICE",
    "PaperAccount",
    "PaperBroker",
    "PaperPosition",
]
