"""Field selectors a rule condition can compare against.

Selectors form a closed vocabulary; each maps to an accessor that reads the
value out of a TradingContext. Anything outside the vocabulary is rejected
by rule validation and resolves to None during evaluation.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from autotrader.core.models import TradingContext


class FieldSelector(str, Enum):
    """Known context field paths."""
    SYMBOL = "symbol"
    CURRENT_PRICE = "current_price"
    PORTFOLIO_VALUE = "portfolio_value"
    CASH_BALANCE = "cash_balance"
    PORTFOLIO_CASH_PERCENTAGE = "portfolio_cash_percentage"

    AI_RECOMMENDATION = "ai_recommendation"
    ML_RECOMMENDATION = "ml_recommendation"
    CONFIDENCE_SCORE = "confidence_score"
    ML_CONFIDENCE = "ml_confidence"

    PROPOSED_POSITION_PERCENT = "proposed_position_percent"
    POSITION_LOSS_PERCENT = "position_loss_percent"
    POSITION_GAIN_PERCENT = "position_gain_percent"
    MARKET_HOURS = "market_hours"
    RSI = "rsi"
    VOLUME_SPIKE = "volume_spike"

    TECHNICAL_RSI = "technical.rsi"
    TECHNICAL_MACD = "technical.macd"
    TECHNICAL_VOLUME = "technical.volume"
    TECHNICAL_VOLATILITY = "technical.volatility"

    RECOMMENDATION_TYPE = "recommendation.type"
    RECOMMENDATION_CONFIDENCE = "recommendation.confidence"
    RECOMMENDATION_REASONING = "recommendation.reasoning"

    POSITION_QUANTITY = "position.quantity"
    POSITION_AVERAGE_PRICE = "position.average_price"
    POSITION_COST_BASIS = "position.cost_basis"
    POSITION_CURRENT_VALUE = "position.current_value"
    POSITION_PNL_PERCENTAGE = "position.pnl_percentage"


def _cash_percentage(ctx: TradingContext) -> Decimal:
    if ctx.portfolio_value == 0:
        return Decimal("0")
    return ctx.cash_balance / ctx.portfolio_value * 100


def _recommendation_attr(name: str) -> Callable[[TradingContext], Any]:
    def accessor(ctx: TradingContext) -> Any:
        if ctx.recommendation is None:
            return None
        return getattr(ctx.recommendation, name)
    return accessor


def _technical_attr(name: str) -> Callable[[TradingContext], Any]:
    def accessor(ctx: TradingContext) -> Any:
        if ctx.technical_indicators is None:
            return None
        return getattr(ctx.technical_indicators, name)
    return accessor


def _position_attr(name: str) -> Callable[[TradingContext], Any]:
    def accessor(ctx: TradingContext) -> Any:
        position = ctx.position_for()
        if position is None:
            return None
        return getattr(position, name)
    return accessor


# Neutral defaults: fields with no upstream source yet read as "nothing
# unusual" (0 / market open / no spike).
FIELD_ACCESSORS: Dict[FieldSelector, Callable[[TradingContext], Any]] = {
    FieldSelector.SYMBOL: lambda ctx: ctx.symbol,
    FieldSelector.CURRENT_PRICE: lambda ctx: ctx.current_price,
    FieldSelector.PORTFOLIO_VALUE: lambda ctx: ctx.portfolio_value,
    FieldSelector.CASH_BALANCE: lambda ctx: ctx.cash_balance,
    FieldSelector.PORTFOLIO_CASH_PERCENTAGE: _cash_percentage,

    FieldSelector.AI_RECOMMENDATION: _recommendation_attr("type"),
    FieldSelector.ML_RECOMMENDATION: _recommendation_attr("type"),
    FieldSelector.CONFIDENCE_SCORE: _recommendation_attr("confidence"),
    FieldSelector.ML_CONFIDENCE: _recommendation_attr("confidence"),

    FieldSelector.PROPOSED_POSITION_PERCENT: lambda ctx: 0,
    FieldSelector.POSITION_LOSS_PERCENT: lambda ctx: 0,
    FieldSelector.POSITION_GAIN_PERCENT: lambda ctx: 0,
    FieldSelector.MARKET_HOURS: lambda ctx: True,
    FieldSelector.RSI: _technical_attr("rsi"),
    FieldSelector.VOLUME_SPIKE: lambda ctx: False,

    FieldSelector.TECHNICAL_RSI: _technical_attr("rsi"),
    FieldSelector.TECHNICAL_MACD: _technical_attr("macd"),
    FieldSelector.TECHNICAL_VOLUME: _technical_attr("volume"),
    FieldSelector.TECHNICAL_VOLATILITY: _technical_attr("volatility"),

    FieldSelector.RECOMMENDATION_TYPE: _recommendation_attr("type"),
    FieldSelector.RECOMMENDATION_CONFIDENCE: _recommendation_attr("confidence"),
    FieldSelector.RECOMMENDATION_REASONING: _recommendation_attr("reasoning"),

    FieldSelector.POSITION_QUANTITY: _position_attr("quantity"),
    FieldSelector.POSITION_AVERAGE_PRICE: _position_attr("average_price"),
    FieldSelector.POSITION_COST_BASIS: _position_attr("cost_basis"),
    FieldSelector.POSITION_CURRENT_VALUE: _position_attr("current_value"),
    FieldSelector.POSITION_PNL_PERCENTAGE: _position_attr("pnl_percentage"),
}


def parse_field(field: Optional[str]) -> Optional[FieldSelector]:
    """Return the selector for ``field`` or None if it is not known."""
    if field is None:
        return None
    try:
        return FieldSelector(field)
    except ValueError:
        return None


def is_known_field(field: Optional[str]) -> bool:
    return parse_field(field) is not None


def resolve_field(field: Optional[str], context: TradingContext) -> Any:
    """Read a field's value from the context; unknown fields resolve to None."""
    selector = parse_field(field)
    if selector is None:
        return None
    return FIELD_ACCESSORS[selector](context)
