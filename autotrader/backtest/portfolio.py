"""Virtual portfolio used by a single backtest run.

Invariants after every operation:
- cash never goes negative; an unaffordable entry is shrunk to the largest
  affordable whole quantity, or skipped
- a position never goes negative; exits are clipped to the held quantity
- each equity point equals cash plus every position marked at its last price
- the high-water mark never decreases and drawdown is never negative
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from autotrader.core.models import MarketData, OrderSide, PositionSnapshot, TradeDetail

logger = structlog.get_logger(__name__)


class SignalType(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


@dataclass
class BacktestSignal:
    """An order intent replayed against the virtual portfolio."""
    type: SignalType
    symbol: str
    quantity: Decimal
    price: Decimal
    timestamp: datetime
    rule_id: Optional[str] = None
    confidence: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def side(self) -> OrderSide:
        return OrderSide.BUY if self.type == SignalType.ENTRY else OrderSide.SELL


@dataclass
class BacktestPosition:
    symbol: str
    quantity: Decimal
    entry_price: Decimal
    current_price: Decimal
    opened_at: datetime

    @property
    def market_value(self) -> Decimal:
        return self.quantity * self.current_price


class BacktestPortfolio:
    """
    Cash, positions, trade ledger, equity curve and drawdown curve.

    Prices passed to entries and exits are pre-slippage; slippage moves buys
    up and sells down by ``price * slippage``. Commission is charged on the
    filled value of every leg.
    """

    def __init__(
        self,
        initial_capital: Decimal,
        commission: Decimal = Decimal("0.001"),
        slippage: Decimal = Decimal("0.0005"),
        start_time: Optional[datetime] = None,
    ):
        self.initial_capital = initial_capital
        self.cash = initial_capital
        self.commission = commission
        self.slippage = slippage

        self.positions: Dict[str, BacktestPosition] = {}
        self.trades: List[TradeDetail] = []
        self.equity_curve: List[Dict[str, Any]] = []
        self.drawdown_curve: List[Dict[str, Any]] = []
        self.high_water_mark = initial_capital

        if start_time is not None:
            self.record_equity(start_time)

    @property
    def positions_value(self) -> Decimal:
        return sum((p.market_value for p in self.positions.values()), Decimal("0"))

    @property
    def equity(self) -> Decimal:
        return self.cash + self.positions_value

    def position_snapshots(self) -> List[PositionSnapshot]:
        return [
            PositionSnapshot(
                symbol=p.symbol,
                quantity=p.quantity,
                average_price=p.entry_price,
                current_price=p.current_price,
            )
            for p in self.positions.values()
        ]

    def apply_slippage(self, price: Decimal, side: OrderSide) -> Decimal:
        adjustment = price * self.slippage
        return price + adjustment if side == OrderSide.BUY else price - adjustment

    # === Signals ===

    def process_signal(self, signal: BacktestSignal) -> Optional[TradeDetail]:
        if signal.type == SignalType.ENTRY:
            return self.enter_position(signal)
        return self.exit_position(signal)

    def enter_position(self, signal: BacktestSignal) -> Optional[TradeDetail]:
        """Buy, shrinking the quantity if cash cannot cover price plus commission."""
        price = self.apply_slippage(signal.price, OrderSide.BUY)
        quantity = signal.quantity
        if quantity <= 0 or price <= 0:
            return None

        if quantity * price * (1 + self.commission) > self.cash:
            quantity = (self.cash / (price * (1 + self.commission))).quantize(
                Decimal("1"), rounding=ROUND_DOWN
            )
            if quantity <= 0:
                logger.debug(
                    "backtest_portfolio.entry_skipped",
                    symbol=signal.symbol,
                    cash=str(self.cash),
                    price=str(price),
                )
                return None

        value = quantity * price
        commission_cost = value * self.commission
        self.cash -= value + commission_cost

        position = self.positions.get(signal.symbol)
        if position is None:
            self.positions[signal.symbol] = BacktestPosition(
                symbol=signal.symbol,
                quantity=quantity,
                entry_price=price,
                current_price=price,
                opened_at=signal.timestamp,
            )
        else:
            total = position.quantity + quantity
            position.entry_price = (position.quantity * position.entry_price + value) / total
            position.quantity = total
            position.current_price = price

        trade = TradeDetail(
            symbol=signal.symbol,
            side=OrderSide.BUY,
            quantity=quantity,
            entry_price=price,
            commission=commission_cost,
            pnl=-commission_cost,
            timestamp=signal.timestamp,
        )
        self.trades.append(trade)
        return trade

    def exit_position(self, signal: BacktestSignal) -> Optional[TradeDetail]:
        """Sell up to the held quantity; no position means nothing happens."""
        position = self.positions.get(signal.symbol)
        if position is None or signal.quantity <= 0:
            return None

        price = self.apply_slippage(signal.price, OrderSide.SELL)
        quantity = min(signal.quantity, position.quantity)
        value = quantity * price
        commission_cost = value * self.commission
        pnl = (price - position.entry_price) * quantity - commission_cost

        self.cash += value - commission_cost
        position.quantity -= quantity
        position.current_price = price
        if position.quantity <= 0:
            del self.positions[signal.symbol]

        trade = TradeDetail(
            symbol=signal.symbol,
            side=OrderSide.SELL,
            quantity=quantity,
            entry_price=position.entry_price,
            exit_price=price,
            commission=commission_cost,
            pnl=pnl,
            timestamp=signal.timestamp,
            is_exit=True,
        )
        self.trades.append(trade)
        return trade

    # === Marking ===

    def update(self, bar: MarketData) -> Decimal:
        """Mark the bar's symbol to its close and record an equity point."""
        position = self.positions.get(bar.symbol)
        if position is not None:
            position.current_price = bar.close
        return self.record_equity(bar.timestamp)

    def record_equity(self, timestamp: datetime) -> Decimal:
        equity = self.equity
        if equity > self.high_water_mark:
            self.high_water_mark = equity

        if self.high_water_mark > 0:
            drawdown = max(Decimal("0"), (self.high_water_mark - equity) / self.high_water_mark) * 100
        else:
            drawdown = Decimal("0")

        self.equity_curve.append({"timestamp": timestamp, "equity": equity, "cash": self.cash})
        self.drawdown_curve.append({"timestamp": timestamp, "drawdown": drawdown})
        return equity
