"""Order execution: the trade pipeline and the order-management sweeps."""

from autotrader.execution.order_manager import OrderManager, is_triggered
from autotrader.execution.pipeline import TradeExecutionPipeline

__all__ = [
    "OrderManager",
    "TradeExecutionPipeline",
    "is_triggered",
]
