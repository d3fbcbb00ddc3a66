"""Paper-trading brokerage.

Fills every order immediately at the requested price (or the current
market price) against in-memory accounts. Lots are averaged on buys and
realized P&L is reported on sells.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

import structlog

from autotrader.core.exceptions import (
    ExecutionFailure, InsufficientFundsError, InsufficientPositionError,
    PortfolioNotFoundError,
)
from autotrader.core.models import (
    Fill, OrderSide, PortfolioSnapshot, PositionSnapshot,
)
from autotrader.exchange.base import BrokerageClient, MarketDataProvider

logger = structlog.get_logger(__name__)


@dataclass
class PaperPosition:
    symbol: str
    quantity: Decimal
    average_price: Decimal


@dataclass
class PaperAccount:
    portfolio_id: str
    cash: Decimal
    positions: Dict[str, PaperPosition] = field(default_factory=dict)
    opened_at: datetime = field(default_factory=datetime.utcnow)


class PaperBroker(BrokerageClient):
    """Simulated brokerage for paper trading."""

    def __init__(self, market_data: MarketDataProvider, commission_rate: Decimal = Decimal("0")):
        self.market_data = market_data
        self.commission_rate = commission_rate
        self.accounts: Dict[str, PaperAccount] = {}

    def open_account(self, portfolio_id: str, initial_cash: Decimal) -> PaperAccount:
        account = PaperAccount(portfolio_id=portfolio_id, cash=initial_cash)
        self.accounts[portfolio_id] = account
        logger.info("paper_broker.account_opened", portfolio_id=portfolio_id, cash=str(initial_cash))
        return account

    def get_account(self, portfolio_id: str) -> PaperAccount:
        account = self.accounts.get(portfolio_id)
        if account is None:
            raise PortfolioNotFoundError(f"Portfolio not found: {portfolio_id}")
        return account

    async def execute(
        self,
        portfolio_id: str,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> Fill:
        account = self.get_account(portfolio_id)

        fill_price = price if price is not None else await self.market_data.current_price(symbol)
        if fill_price is None or fill_price <= 0:
            raise ExecutionFailure(f"No price available for {symbol}")
        if quantity <= 0:
            raise ExecutionFailure(f"Invalid quantity {quantity}")

        value = quantity * fill_price
        commission = value * self.commission_rate
        realized_pnl = None

        if side == OrderSide.BUY:
            cost = value + commission
            if cost > account.cash:
                raise InsufficientFundsError(
                    f"Insufficient funds. Required: ${cost:.2f}, Available: ${account.cash:.2f}"
                )
            account.cash -= cost

            position = account.positions.get(symbol)
            if position is None:
                account.positions[symbol] = PaperPosition(symbol, quantity, fill_price)
            else:
                total = position.quantity + quantity
                position.average_price = (
                    position.quantity * position.average_price + value
                ) / total
                position.quantity = total
        else:
            position = account.positions.get(symbol)
            held = position.quantity if position else Decimal("0")
            if held < quantity:
                raise InsufficientPositionError(
                    f"Insufficient position. Required: {quantity}, Available: {held}"
                )
            realized_pnl = (fill_price - position.average_price) * quantity - commission
            account.cash += value - commission
            position.quantity -= quantity
            if position.quantity == 0:
                del account.positions[symbol]

        logger.info(
            "paper_broker.order_filled",
            portfolio_id=portfolio_id,
            symbol=symbol,
            side=side.value,
            quantity=str(quantity),
            price=str(fill_price),
            commission=str(commission),
            realized_pnl=str(realized_pnl) if realized_pnl is not None else None,
        )

        return Fill(
            symbol=symbol,
            side=side,
            price=fill_price,
            quantity=quantity,
            commission=commission,
            realized_pnl=realized_pnl,
        )

    async def portfolio_snapshot(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        account = self.accounts.get(portfolio_id)
        if account is None:
            return None

        positions = []
        for position in account.positions.values():
            mark = await self.market_data.current_price(position.symbol)
            if mark is None or mark <= 0:
                mark = position.average_price
            positions.append(PositionSnapshot(
                symbol=position.symbol,
                quantity=position.quantity,
                average_price=position.average_price,
                current_price=mark,
            ))

        total_value = account.cash + sum((p.current_value for p in positions), Decimal("0"))
        return PortfolioSnapshot(
            portfolio_id=portfolio_id,
            cash=account.cash,
            total_value=total_value,
            positions=positions,
        )
