"""Order management: resting limit/stop orders and periodic order sweeps.

Market orders execute as soon as they are placed. Limit and stop orders
rest as PENDING in an in-memory book until a sweep finds their trigger met:

    buy limit   price <= limit
    sell limit  price >= limit
    buy stop    price >= stop
    sell stop   price <= stop

Expired resting orders are cancelled; terminal orders are dropped from the
book once they are older than the retention window.
"""
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from autotrader.core.config import OrderManagementConfig, order_management_config
from autotrader.core.models import (
    AutoTrade, OrderSide, OrderStatus, PriceType, TradeRequest,
)
from autotrader.core.scheduler import ScheduleHandle, Scheduler
from autotrader.execution.pipeline import TradeExecutionPipeline
from autotrader.risk.risk_manager import RiskLimits

logger = structlog.get_logger(__name__)


def is_triggered(order: AutoTrade, price: Decimal) -> bool:
    """True when a resting order's trigger condition holds at ``price``."""
    trigger = order.trigger_price
    if trigger is None:
        return False

    if order.price_type == PriceType.LIMIT:
        return price <= trigger if order.side == OrderSide.BUY else price >= trigger
    if order.price_type == PriceType.STOP:
        return price >= trigger if order.side == OrderSide.BUY else price <= trigger
    return True


class OrderManager:
    """Places orders and runs the fill, expiry and history sweeps."""

    def __init__(
        self,
        pipeline: TradeExecutionPipeline,
        config: Optional[OrderManagementConfig] = None,
    ):
        self.pipeline = pipeline
        self.config = config or order_management_config
        self.orders: Dict[str, AutoTrade] = {}
        self._limits: Dict[str, RiskLimits] = {}
        self._handles: List[ScheduleHandle] = []
        self._scheduler: Optional[Scheduler] = None

    # =========================================================================
    # Placement
    # =========================================================================

    async def place_order(
        self,
        request: TradeRequest,
        price_type: Optional[PriceType] = None,
        limit_price: Optional[Decimal] = None,
        expires_at: Optional[datetime] = None,
        limits: Optional[RiskLimits] = None,
    ) -> AutoTrade:
        """
        Place an order.

        Market orders are executed before this returns; the returned order
        is EXECUTED or FAILED. Limit and stop orders are returned PENDING.

        Raises:
            ValueError: If a limit/stop order has no trigger price
        """
        price_type = price_type or request.price_type
        trigger = limit_price if limit_price is not None else request.price

        if price_type != PriceType.MARKET and trigger is None:
            raise ValueError(f"{price_type.value} orders require a trigger price")

        if price_type != PriceType.MARKET and expires_at is None:
            expires_at = request.expires_at or (
                datetime.utcnow() + timedelta(minutes=self.config.default_order_ttl_minutes)
            )

        request = request.model_copy(
            update={"price_type": price_type, "price": trigger, "expires_at": expires_at}
        )
        order = await self.pipeline.submit_trade(request)
        self.orders[order.id] = order

        if price_type == PriceType.MARKET:
            await self.pipeline.execute_order(order, limits=limits)
        elif limits is not None:
            self._limits[order.id] = limits

        logger.info(
            "order_manager.order_placed",
            order_id=order.id,
            symbol=order.symbol,
            side=order.side.value,
            price_type=price_type.value,
            trigger_price=str(trigger) if trigger is not None else None,
            status=order.status.value,
        )
        return order

    async def cancel_order(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if order is None:
            return await self.pipeline.cancel_trade(order_id)
        if order.status != OrderStatus.PENDING:
            return False

        order.transition_to(OrderStatus.CANCELLED)
        await self.pipeline.repository.save_order(order)
        self._limits.pop(order_id, None)
        logger.info("order_manager.order_cancelled", order_id=order_id)
        return True

    async def load_pending_orders(self) -> int:
        """Pull PENDING orders from storage into the book."""
        pending = await self.pipeline.repository.get_pending_orders()
        for order in pending:
            self.orders.setdefault(order.id, order)
        return len(pending)

    def resting_orders(self) -> List[AutoTrade]:
        return [
            o for o in self.orders.values()
            if o.status == OrderStatus.PENDING and o.price_type != PriceType.MARKET
        ]

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def process_orders(self) -> int:
        """Execute resting orders whose trigger is met. Returns how many ran."""
        executed = 0
        now = datetime.utcnow()

        for order in self.resting_orders():
            if order.expires_at is not None and order.expires_at <= now:
                continue

            try:
                price = await self.pipeline.market_data.current_price(order.symbol)
                if price is None or price <= 0 or not is_triggered(order, price):
                    continue

                fill_price = order.trigger_price if order.price_type == PriceType.LIMIT else price
                result = await self.pipeline.execute_order(
                    order, limits=self._limits.pop(order.id, None), price=fill_price
                )
                executed += 1

                logger.info(
                    "order_manager.order_triggered",
                    order_id=order.id,
                    symbol=order.symbol,
                    market_price=str(price),
                    success=result.success,
                )
            except Exception as e:
                logger.error("order_manager.process_error", order_id=order.id, error=str(e))

        return executed

    async def expire_orders(self) -> int:
        """Cancel resting orders past their expiry. Returns how many were cancelled."""
        now = datetime.utcnow()
        expired = 0

        for order in self.resting_orders():
            if order.expires_at is None or order.expires_at > now:
                continue
            try:
                order.transition_to(OrderStatus.CANCELLED)
                order.metadata["cancel_reason"] = "expired"
                await self.pipeline.repository.save_order(order)
                self._limits.pop(order.id, None)
                expired += 1
            except Exception as e:
                logger.error("order_manager.expire_error", order_id=order.id, error=str(e))

        if expired:
            logger.info("order_manager.orders_expired", count=expired)
        return expired

    async def cleanup_order_history(self) -> int:
        """Drop terminal orders older than the retention window from the book."""
        cutoff = datetime.utcnow() - timedelta(hours=self.config.history_retention_hours)
        stale = [
            order_id for order_id, order in self.orders.items()
            if order.is_terminal and (order.updated_at or order.created_at) < cutoff
        ]
        for order_id in stale:
            del self.orders[order_id]

        if stale:
            logger.info("order_manager.history_cleaned", removed=len(stale))
        return len(stale)

    def get_order_statistics(self) -> Dict[str, Any]:
        by_status = Counter(o.status.value for o in self.orders.values())
        by_side = Counter(o.side.value for o in self.orders.values())
        executed = by_status.get(OrderStatus.EXECUTED.value, 0)
        failed = by_status.get(OrderStatus.FAILED.value, 0)
        finished = executed + failed

        return {
            "total": len(self.orders),
            "by_status": {s.value: by_status.get(s.value, 0) for s in OrderStatus},
            "by_side": dict(by_side),
            "resting": len(self.resting_orders()),
            "fill_rate": executed / finished * 100 if finished else 0.0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, scheduler: Scheduler):
        """Schedule the fill, expiry and cleanup sweeps."""
        self._scheduler = scheduler
        self._handles = [
            scheduler.schedule(
                self.config.fill_sweep_interval_seconds, self.process_orders, "order_fill_sweep"
            ),
            scheduler.schedule(
                self.config.expiry_sweep_interval_seconds, self.expire_orders, "order_expiry_sweep"
            ),
            scheduler.schedule(
                self.config.cleanup_interval_seconds, self.cleanup_order_history, "order_history_cleanup"
            ),
        ]
        logger.info("order_manager.started", sweeps=len(self._handles))

    def stop(self):
        if self._scheduler is not None:
            for handle in self._handles:
                self._scheduler.cancel(handle)
        self._handles = []
        logger.info("order_manager.stopped")
