"""Position sizing: converts a trade intent into a whole-unit quantity.

Every method returns a PositionSizeResult and shares the same tail:
the dollar amount is clipped to available capital, divided by price and
rounded down to whole units. A method that raises falls back to
percentage sizing at the configured fallback percent (1% by default).
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional

import structlog

from autotrader.core.config import PositionSizingConfig, sizing_config
from autotrader.core.models import (
    PositionSizeRequest, PositionSizeResult, RiskTolerance, SizingMethod,
)

logger = structlog.get_logger(__name__)


def _dec(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def floor_units(value: Decimal) -> Decimal:
    """Round down to a whole number of units, never below zero."""
    return max(value.quantize(Decimal("1"), rounding=ROUND_DOWN), Decimal("0"))


@dataclass
class SizingRecommendation:
    """Suggested sizing method for the current market and risk appetite."""
    method: SizingMethod
    params: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""


class PositionSizer:
    """
    Family of sizing algorithms.

    Methods:
    - fixed: dollar target, capped at 20% of portfolio
    - percentage: percent of portfolio, capped at 20%
    - full_position: the entire held quantity (for exits)
    - kelly: Kelly fraction clamped to [0, 25%]
    - volatility_adjusted: base% scaled by target/current volatility, capped at 15%
    - risk_parity: dollars at risk divided by price * volatility
    """

    def __init__(self, config: Optional[PositionSizingConfig] = None):
        self.config = config or sizing_config

    def calculate_position_size(
        self,
        method: SizingMethod,
        request: PositionSizeRequest,
        params: Optional[Dict[str, Any]] = None,
    ) -> PositionSizeResult:
        """Dispatch to the sizing method, falling back to 1% on error."""
        params = params or {}
        try:
            if method == SizingMethod.FIXED:
                return self.calculate_fixed_size(request, params.get("dollar_amount"))
            if method == SizingMethod.PERCENTAGE:
                return self.calculate_percentage_size(request, params.get("percentage"))
            if method == SizingMethod.FULL_POSITION:
                return self.calculate_full_position_size(request)
            if method == SizingMethod.KELLY:
                return self.calculate_kelly_size(request)
            if method == SizingMethod.VOLATILITY_ADJUSTED:
                return self.calculate_volatility_adjusted_size(
                    request,
                    base_percentage=params.get("base_percentage"),
                    target_volatility=params.get("target_volatility"),
                )
            if method == SizingMethod.RISK_PARITY:
                return self.calculate_risk_parity_size(
                    request,
                    risk_target=params.get("risk_target"),
                    max_risk_pct=params.get("max_risk_pct"),
                )

            logger.warning("position_sizer.unknown_method", method=str(method))
            return self.calculate_percentage_size(request, self.config.default_percentage)

        except Exception as e:
            logger.error(
                "position_sizer.calculation_error",
                method=str(method),
                symbol=request.symbol,
                error=str(e),
            )
            result = self.calculate_percentage_size(request, self.config.fallback_percentage)
            result.reasoning = f"Fallback sizing after error: {result.reasoning}"
            return result

    # === Sizing Methods ===

    def calculate_fixed_size(self, request: PositionSizeRequest, dollar_amount) -> PositionSizeResult:
        if dollar_amount is None:
            raise ValueError("Fixed sizing requires a dollar amount")
        cap = request.portfolio_value * _dec(self.config.max_fixed_pct) / 100
        dollars = min(_dec(dollar_amount), cap)
        return self._build_result(
            request, dollars, SizingMethod.FIXED,
            f"Fixed ${_dec(dollar_amount)} (capped at {self.config.max_fixed_pct}% of portfolio)",
        )

    def calculate_percentage_size(self, request: PositionSizeRequest, percentage=None) -> PositionSizeResult:
        pct = _dec(percentage if percentage is not None else self.config.default_percentage)
        pct = min(pct, _dec(self.config.max_percentage_pct))
        dollars = request.portfolio_value * pct / 100
        return self._build_result(
            request, dollars, SizingMethod.PERCENTAGE, f"{pct}% of portfolio value",
        )

    def calculate_full_position_size(self, request: PositionSizeRequest) -> PositionSizeResult:
        quantity = floor_units(request.held_quantity)
        dollars = quantity * request.current_price if request.current_price > 0 else Decimal("0")
        return PositionSizeResult(
            quantity=quantity,
            dollar_amount=dollars,
            percentage_of_portfolio=self._pct_of(dollars, request.portfolio_value),
            reasoning="Full held position",
            method=SizingMethod.FULL_POSITION,
        )

    def calculate_kelly_size(self, request: PositionSizeRequest) -> PositionSizeResult:
        win_rate = request.win_rate if request.win_rate is not None else self.config.default_win_rate
        avg_win = request.avg_win if request.avg_win is not None else self.config.default_avg_win
        avg_loss = request.avg_loss if request.avg_loss is not None else self.config.default_avg_loss

        fraction = self.kelly_fraction(win_rate, avg_win, avg_loss, self.config.kelly_cap)
        dollars = request.portfolio_value * fraction
        return self._build_result(
            request, dollars, SizingMethod.KELLY,
            f"Kelly fraction {fraction:.4f} (win rate {win_rate}, "
            f"avg win {avg_win}, avg loss {avg_loss})",
        )

    @staticmethod
    def kelly_fraction(win_rate, avg_win, avg_loss, cap=0.25) -> Decimal:
        """
        Kelly criterion clamped to [0, cap].

        f* = (b*p - q) / b, with b = avg_win / avg_loss, p = win rate, q = 1 - p.
        Non-positive payoffs mean there is no edge to size.
        """
        p = _dec(win_rate)
        win = _dec(avg_win)
        loss = _dec(avg_loss)
        if win <= 0 or loss <= 0:
            return Decimal("0")

        b = win / loss
        q = Decimal("1") - p
        fraction = (b * p - q) / b
        return min(max(fraction, Decimal("0")), _dec(cap))

    def calculate_volatility_adjusted_size(
        self,
        request: PositionSizeRequest,
        base_percentage=None,
        target_volatility=None,
    ) -> PositionSizeResult:
        base = _dec(base_percentage if base_percentage is not None else self.config.default_percentage)
        target = _dec(target_volatility if target_volatility is not None else self.config.target_volatility)
        current = _dec(request.volatility if request.volatility is not None else self.config.default_volatility)
        if current <= 0:
            raise ValueError("Volatility must be positive")

        pct = min(base * (target / current), _dec(self.config.max_volatility_adjusted_pct))
        dollars = request.portfolio_value * pct / 100
        return self._build_result(
            request, dollars, SizingMethod.VOLATILITY_ADJUSTED,
            f"{pct:.2f}% of portfolio (base {base}%, target vol {target}, current vol {current})",
        )

    def calculate_risk_parity_size(
        self,
        request: PositionSizeRequest,
        risk_target=None,
        max_risk_pct=None,
    ) -> PositionSizeResult:
        target = _dec(risk_target if risk_target is not None else self.config.risk_target)
        max_risk = _dec(max_risk_pct if max_risk_pct is not None else self.config.max_risk_pct)
        volatility = _dec(request.volatility if request.volatility is not None else self.config.default_volatility)
        if volatility <= 0:
            raise ValueError("Volatility must be positive")
        if request.current_price <= 0:
            return self._build_result(request, Decimal("0"), SizingMethod.RISK_PARITY, "No valid price")

        risk_dollars = min(
            request.portfolio_value * target,
            request.portfolio_value * max_risk / 100,
        )
        quantity = floor_units(risk_dollars / (request.current_price * volatility))
        return self._build_result(
            request, quantity * request.current_price, SizingMethod.RISK_PARITY,
            f"Risk ${risk_dollars:.2f} at volatility {volatility}",
        )

    # === Recommendations ===

    def get_recommended_sizing_method(
        self,
        volatility: Optional[float] = None,
        win_rate: Optional[float] = None,
        risk_tolerance: RiskTolerance = RiskTolerance.MODERATE,
    ) -> SizingRecommendation:
        if volatility is not None and volatility > 0.05:
            return SizingRecommendation(
                method=SizingMethod.VOLATILITY_ADJUSTED,
                params={"base_percentage": 3, "target_volatility": 0.02},
                reasoning="High volatility; scale exposure to a volatility target",
            )
        if win_rate is not None and win_rate > 0.6:
            return SizingRecommendation(
                method=SizingMethod.KELLY,
                params={"win_rate": win_rate},
                reasoning="Strong historical win rate supports Kelly sizing",
            )
        if risk_tolerance == RiskTolerance.CONSERVATIVE:
            return SizingRecommendation(
                method=SizingMethod.RISK_PARITY,
                params={"risk_target": 0.005},
                reasoning="Conservative tolerance; size by risk budget",
            )
        if risk_tolerance == RiskTolerance.AGGRESSIVE:
            return SizingRecommendation(
                method=SizingMethod.PERCENTAGE,
                params={"percentage": 10},
                reasoning="Aggressive tolerance; larger fixed percentage",
            )
        return SizingRecommendation(
            method=SizingMethod.PERCENTAGE,
            params={"percentage": 5},
            reasoning="Default percentage sizing",
        )

    def calculate_max_safe_size(
        self,
        portfolio_value: Decimal,
        price: Decimal,
        volatility: float,
        max_risk_pct: float = 2.0,
    ) -> Decimal:
        """Largest quantity whose loss at a 2-sigma stop stays within max_risk_pct."""
        if price <= 0 or volatility <= 0:
            return Decimal("0")
        stop_distance = price * _dec(volatility) * 2
        max_loss = portfolio_value * _dec(max_risk_pct) / 100
        return floor_units(max_loss / stop_distance)

    # === Helpers ===

    def _build_result(
        self,
        request: PositionSizeRequest,
        dollars: Decimal,
        method: SizingMethod,
        reasoning: str,
    ) -> PositionSizeResult:
        """Clip to available capital and convert dollars to whole units."""
        available = (
            request.available_capital
            if request.available_capital is not None
            else request.portfolio_value
        )
        dollars = max(min(dollars, available), Decimal("0"))

        if request.current_price <= 0:
            quantity = Decimal("0")
        else:
            quantity = floor_units(dollars / request.current_price)

        actual = quantity * request.current_price if quantity > 0 else Decimal("0")

        logger.debug(
            "position_sizer.size_calculated",
            method=method.value,
            symbol=request.symbol,
            quantity=str(quantity),
            dollar_amount=str(actual),
        )

        return PositionSizeResult(
            quantity=quantity,
            dollar_amount=actual,
            percentage_of_portfolio=self._pct_of(actual, request.portfolio_value),
            reasoning=reasoning,
            method=method,
        )

    @staticmethod
    def _pct_of(dollars: Decimal, portfolio_value: Decimal) -> Decimal:
        if portfolio_value <= 0:
            return Decimal("0")
        return dollars / portfolio_value * 100
