"""Trade execution pipeline.

Drives one order through its lifecycle:

    PENDING -> EXECUTING -> EXECUTED | FAILED
    PENDING -> CANCELLED

Pre-trade validation (portfolio exists, risk gatekeeper, cash for buys,
held quantity for sells) runs after the order enters EXECUTING. Any
failure, expected or not, lands the order in FAILED with a reason. There
is no automatic retry.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog

from autotrader.core.exceptions import (
    ExecutionFailure, InsufficientFundsError, InsufficientPositionError,
    OrderNotFoundError, PortfolioNotFoundError,
)
from autotrader.core.models import (
    AutoTrade, OrderSide, OrderStatus, PriceType, TradeRequest, TradeResult,
)
from autotrader.exchange.base import BrokerageClient, MarketDataProvider
from autotrader.risk.risk_manager import RiskLimits, RiskManager

logger = structlog.get_logger(__name__)


class TradeExecutionPipeline:
    """
    Submits, validates and fills orders.

    Collaborators:
    - broker: fills orders and reports portfolio snapshots
    - risk_manager: gatekeeper consulted before every fill
    - market_data: price source for market orders
    - repository: order persistence (the Database order methods)
    """

    def __init__(
        self,
        broker: BrokerageClient,
        risk_manager: RiskManager,
        market_data: MarketDataProvider,
        repository,
    ):
        self.broker = broker
        self.risk_manager = risk_manager
        self.market_data = market_data
        self.repository = repository

    # =========================================================================
    # Submission / Execution
    # =========================================================================

    async def submit_trade(self, request: TradeRequest) -> AutoTrade:
        """Create and persist a PENDING order for the request."""
        order = AutoTrade(
            portfolio_id=request.portfolio_id,
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            price_type=request.price_type,
            trigger_price=request.price,
            rule_id=request.rule_id,
            recommendation_id=request.recommendation_id,
            strategy_id=request.strategy_id,
            expires_at=request.expires_at,
            metadata=dict(request.metadata, volatility=request.volatility)
            if request.volatility is not None else dict(request.metadata),
        )
        await self.repository.save_order(order)

        logger.info(
            "execution.order_submitted",
            order_id=order.id,
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=str(order.quantity),
            price_type=order.price_type.value,
        )
        return order

    async def execute_trade(
        self,
        request: TradeRequest,
        limits: Optional[RiskLimits] = None,
    ) -> TradeResult:
        """Submit and immediately execute."""
        order = await self.submit_trade(request)
        return await self.execute_order(order, limits=limits)

    async def execute_order(
        self,
        order: AutoTrade,
        limits: Optional[RiskLimits] = None,
        price: Optional[Decimal] = None,
    ) -> TradeResult:
        """
        Execute a PENDING order.

        Args:
            order: Order to execute; must be PENDING
            limits: Risk limits for this order; defaults to the gatekeeper's
            price: Execution price; defaults to the trigger price for
                limit/stop orders and the current market price otherwise

        Returns:
            TradeResult describing the EXECUTED or FAILED outcome
        """
        order.transition_to(OrderStatus.EXECUTING)
        await self.repository.save_order(order)

        adjusted_quantity = None
        try:
            portfolio = await self.broker.portfolio_snapshot(order.portfolio_id)
            if portfolio is None:
                raise PortfolioNotFoundError("Portfolio not found")

            fill_price = await self._resolve_price(order, price)

            risk = self.risk_manager.validate_trade(
                self._to_request(order), portfolio, limits=limits, price=fill_price
            )
            if not risk.is_allowed:
                adjusted_quantity = risk.adjusted_quantity
                raise ExecutionFailure(risk.reason)

            if order.side == OrderSide.BUY:
                required = order.quantity * fill_price
                if required > portfolio.cash:
                    raise InsufficientFundsError(
                        f"Insufficient funds. Required: ${required:.2f}, "
                        f"Available: ${portfolio.cash:.2f}"
                    )
            else:
                position = portfolio.position_for(order.symbol)
                held = position.quantity if position else Decimal("0")
                if held < order.quantity:
                    raise InsufficientPositionError(
                        f"Insufficient position. Required: {order.quantity}, Available: {held}"
                    )

            fill = await self.broker.execute(
                order.portfolio_id, order.symbol, order.side, order.quantity, fill_price
            )

        except Exception as e:
            return await self._fail(order, str(e), adjusted_quantity)

        order.mark_executed(fill.price, fill.quantity, fill.executed_at)
        await self.repository.save_order(order)

        if order.side == OrderSide.SELL and fill.realized_pnl is not None:
            self.risk_manager.record_trade_pnl(order.portfolio_id, fill.realized_pnl)

        logger.info(
            "execution.order_executed",
            order_id=order.id,
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=str(fill.quantity),
            price=str(fill.price),
            realized_pnl=str(fill.realized_pnl) if fill.realized_pnl is not None else None,
        )

        return TradeResult(
            success=True,
            trade_id=order.id,
            status=order.status,
            executed_price=fill.price,
            executed_quantity=fill.quantity,
            realized_pnl=fill.realized_pnl,
        )

    async def _resolve_price(self, order: AutoTrade, price: Optional[Decimal]) -> Decimal:
        if price is None and order.price_type != PriceType.MARKET:
            price = order.trigger_price
        if price is None:
            price = await self.market_data.current_price(order.symbol)
        if price is None or price <= 0:
            raise ExecutionFailure(f"No price available for {order.symbol}")
        return price

    @staticmethod
    def _to_request(order: AutoTrade) -> TradeRequest:
        return TradeRequest(
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=order.trigger_price,
            price_type=order.price_type,
            rule_id=order.rule_id,
            strategy_id=order.strategy_id,
            volatility=order.metadata.get("volatility"),
        )

    async def _fail(
        self,
        order: AutoTrade,
        reason: str,
        adjusted_quantity: Optional[Decimal] = None,
    ) -> TradeResult:
        order.mark_failed(reason)
        await self.repository.save_order(order)

        logger.warning(
            "execution.order_failed",
            order_id=order.id,
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=order.side.value,
            reason=reason,
        )

        return TradeResult(
            success=False,
            trade_id=order.id,
            status=order.status,
            error=reason,
            adjusted_quantity=adjusted_quantity,
        )

    # =========================================================================
    # Queries / Cancellation
    # =========================================================================

    async def cancel_trade(self, trade_id: str) -> bool:
        """Cancel a PENDING order. Returns False if it already left PENDING."""
        order = await self.get_trade(trade_id)
        if order.status != OrderStatus.PENDING:
            return False

        order.transition_to(OrderStatus.CANCELLED)
        await self.repository.save_order(order)
        logger.info("execution.order_cancelled", order_id=trade_id)
        return True

    async def get_trade(self, trade_id: str) -> AutoTrade:
        order = await self.repository.get_order(trade_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found: {trade_id}")
        return order

    async def get_portfolio_trades(
        self,
        portfolio_id: str,
        status: Optional[OrderStatus] = None,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AutoTrade], int]:
        """A page of a portfolio's orders, newest first, plus the total count."""
        filters = dict(
            portfolio_id=portfolio_id,
            status=status,
            symbol=symbol,
            start_date=start_date,
            end_date=end_date,
        )
        trades = await self.repository.get_orders(limit=limit, offset=offset, **filters)
        total = await self.repository.count_orders(**filters)
        return trades, total
