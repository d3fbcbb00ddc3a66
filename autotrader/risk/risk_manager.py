"""Risk gatekeeper - validates every trade before it reaches the brokerage.

Checks run in priority order and the first blocking failure short-circuits:

1. emergency_stop  - the portfolio has been halted
2. position_size   - order value vs. max % of portfolio (suggests a smaller quantity)
3. daily_loss      - realized loss today vs. dollar limit
4. max_positions   - open position count vs. limit
5. volatility      - non-blocking warning above the volatility threshold

The emergency drawdown check is separate: ``check_emergency_stop`` reports
whether a portfolio's drawdown from its high-water mark has crossed the
emergency threshold. Callers must then stop every session for that
portfolio, not just reject one trade.

CRITICAL: Any changes to this file must be reviewed and tested thoroughly.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, List, Optional

import structlog

from autotrader.core.config import RiskLimitsConfig, risk_config
from autotrader.core.models import (
    OrderSide, PortfolioSnapshot, StrategyRiskLimits, TradeRequest,
)

logger = structlog.get_logger(__name__)


@dataclass
class RiskCheck:
    """Result of validating a trade.

    Attributes:
        is_allowed: Whether the trade may proceed
        reason: Human-readable explanation if rejected
        adjusted_quantity: A smaller quantity that would pass, if any
        risk_level: normal, warning or critical
        rule_triggered: Name of the rule that rejected the trade
        warnings: Non-blocking findings
        metadata: Additional diagnostic information
    """
    is_allowed: bool
    reason: str = ""
    adjusted_quantity: Optional[Decimal] = None
    risk_level: str = "normal"
    rule_triggered: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def approved(cls, **kwargs) -> "RiskCheck":
        return cls(is_allowed=True, **kwargs)

    @classmethod
    def rejected(cls, reason: str, **kwargs) -> "RiskCheck":
        return cls(is_allowed=False, reason=reason, **kwargs)


@dataclass
class RiskRule:
    """Individual risk rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
        is_blocking: If False, a failure is recorded as a warning only
    """
    name: str
    check_fn: Callable[..., RiskCheck]
    priority: int = 100
    is_blocking: bool = True


@dataclass
class RiskLimits:
    """Limits applied to a single trade validation.

    Percent fields are 0-100; volatility_threshold is a fraction.
    """
    max_position_size_pct: Decimal = Decimal("10")
    max_daily_loss: Decimal = Decimal("1000")
    max_total_positions: int = 10
    volatility_threshold: Decimal = Decimal("0.05")

    @classmethod
    def from_config(cls, config: RiskLimitsConfig) -> "RiskLimits":
        return cls(
            max_position_size_pct=Decimal(str(config.max_position_size_pct)),
            max_daily_loss=Decimal(str(config.max_daily_loss)),
            max_total_positions=config.max_total_positions,
            volatility_threshold=Decimal(str(config.volatility_threshold)),
        )

    @classmethod
    def for_deployment(
        cls,
        limits: StrategyRiskLimits,
        max_positions: int,
        config: RiskLimitsConfig,
    ) -> "RiskLimits":
        """Per-deployment limits layered over the configured defaults."""
        return cls(
            max_position_size_pct=limits.max_position_size,
            max_daily_loss=limits.daily_loss_limit,
            max_total_positions=max_positions,
            volatility_threshold=Decimal(str(config.volatility_threshold)),
        )


@dataclass
class EmergencyStop:
    reason: str
    triggered_at: datetime = field(default_factory=datetime.utcnow)


class RiskManager:
    """
    Portfolio-level risk gatekeeper.

    State is kept per portfolio:
    - realized P&L for the current UTC day (daily loss limit)
    - high-water mark of total value (emergency drawdown)
    - active emergency stops (manual reset required)

    An optional brokerage collaborator lets ``check_emergency_stop`` fetch
    the current snapshot by portfolio id.
    """

    def __init__(self, config: Optional[RiskLimitsConfig] = None, broker=None):
        self.config = config or risk_config
        self.broker = broker
        self.default_limits = RiskLimits.from_config(self.config)
        self.emergency_threshold = Decimal(str(self.config.emergency_drawdown_threshold))

        # Per-portfolio tracking
        self._daily_pnl: Dict[str, Decimal] = {}
        self._pnl_day: Dict[str, date] = {}
        self._high_water_marks: Dict[str, Decimal] = {}
        self._emergency_stops: Dict[str, EmergencyStop] = {}

        # Risk rules registry
        self._risk_rules: List[RiskRule] = []
        self._register_default_rules()

        self.rejected_trades: List[Dict] = []

    def _register_default_rules(self):
        """Register the default set of risk rules in priority order."""
        self._risk_rules = [
            RiskRule(
                name="emergency_stop",
                check_fn=self._check_emergency_halt,
                priority=1,
                is_blocking=True
            ),
            RiskRule(
                name="position_size",
                check_fn=self._check_position_size,
                priority=2,
                is_blocking=True
            ),
            RiskRule(
                name="daily_loss",
                check_fn=self._check_daily_loss,
                priority=3,
                is_blocking=True
            ),
            RiskRule(
                name="max_positions",
                check_fn=self._check_max_positions,
                priority=4,
                is_blocking=True
            ),
            RiskRule(
                name="volatility",
                check_fn=self._check_volatility,
                priority=5,
                is_blocking=False  # Warning only, doesn't block
            ),
        ]
        self._risk_rules.sort(key=lambda r: r.priority)

    # === Trade Validation ===

    def validate_trade(
        self,
        request: TradeRequest,
        portfolio: PortfolioSnapshot,
        limits: Optional[RiskLimits] = None,
        price: Optional[Decimal] = None,
    ) -> RiskCheck:
        """
        Validate a trade against all risk rules.

        Args:
            request: The sized trade intent
            portfolio: Current brokerage snapshot for the portfolio
            limits: Limits to apply; defaults to the configured limits
            price: Expected execution price; defaults to ``request.price``

        Returns:
            RiskCheck; on position-size rejection ``adjusted_quantity`` holds
            the largest whole quantity that would pass.
        """
        limits = limits or self.default_limits
        price = price if price is not None else request.price

        try:
            warnings = []
            for rule in self._risk_rules:
                result = rule.check_fn(request, portfolio, limits, price)
                if result.is_allowed:
                    continue

                self._log_trade_rejected(request, rule.name, result.reason)

                if rule.is_blocking:
                    logger.warning(
                        "risk_manager.trade_rejected",
                        portfolio_id=request.portfolio_id,
                        symbol=request.symbol,
                        side=request.side.value,
                        rule=rule.name,
                        reason=result.reason,
                        priority=rule.priority,
                    )
                    result.rule_triggered = rule.name
                    result.warnings = warnings
                    return result

                warnings.append(result.reason)

        except Exception as e:
            logger.error(
                "risk_manager.validation_error",
                portfolio_id=request.portfolio_id,
                symbol=request.symbol,
                error=str(e),
            )
            return RiskCheck.rejected("Risk validation error", risk_level="critical")

        logger.info(
            "risk_manager.trade_approved",
            portfolio_id=request.portfolio_id,
            symbol=request.symbol,
            side=request.side.value,
            quantity=str(request.quantity),
            warnings=warnings or None,
        )
        return RiskCheck.approved(
            risk_level="warning" if warnings else "normal",
            warnings=warnings,
        )

    # === Risk Rule Implementations ===

    def _check_emergency_halt(self, request, portfolio, limits, price) -> RiskCheck:
        stop = self._emergency_stops.get(request.portfolio_id)
        if stop is not None:
            return RiskCheck.rejected(
                f"Emergency stop active: {stop.reason}",
                risk_level="critical",
                metadata={"triggered_at": stop.triggered_at.isoformat()},
            )
        return RiskCheck.approved()

    def _check_position_size(self, request, portfolio, limits, price) -> RiskCheck:
        if request.side != OrderSide.BUY or price is None or price <= 0:
            return RiskCheck.approved()

        trade_value = request.quantity * price
        max_value = portfolio.total_value * limits.max_position_size_pct / 100

        if trade_value > max_value:
            adjusted = (max_value / price).quantize(Decimal("1"), rounding=ROUND_DOWN)
            return RiskCheck.rejected(
                f"Position size exceeds maximum allowed ({limits.max_position_size_pct}% of portfolio)",
                adjusted_quantity=max(adjusted, Decimal("0")),
                risk_level="warning",
                metadata={"trade_value": str(trade_value), "max_value": str(max_value)},
            )
        return RiskCheck.approved()

    def _check_daily_loss(self, request, portfolio, limits, price) -> RiskCheck:
        daily_pnl = self.get_daily_pnl(request.portfolio_id)
        if daily_pnl < 0 and -daily_pnl >= limits.max_daily_loss:
            return RiskCheck.rejected(
                f"Daily loss limit reached (${limits.max_daily_loss})",
                risk_level="critical",
                metadata={"daily_pnl": str(daily_pnl)},
            )
        return RiskCheck.approved()

    def _check_max_positions(self, request, portfolio, limits, price) -> RiskCheck:
        if request.side != OrderSide.BUY:
            return RiskCheck.approved()
        if portfolio.position_for(request.symbol) is not None:
            # Adding to an existing position does not open a new one
            return RiskCheck.approved()

        if portfolio.open_position_count >= limits.max_total_positions:
            return RiskCheck.rejected(
                f"Maximum positions limit reached ({limits.max_total_positions})",
                risk_level="warning",
            )
        return RiskCheck.approved()

    def _check_volatility(self, request, portfolio, limits, price) -> RiskCheck:
        if request.volatility is None:
            return RiskCheck.approved()
        if Decimal(str(request.volatility)) > limits.volatility_threshold:
            return RiskCheck.rejected(
                f"High volatility detected ({request.volatility:.2%})",
                risk_level="warning",
            )
        return RiskCheck.approved()

    # === P&L Tracking ===

    def record_trade_pnl(self, portfolio_id: str, realized_pnl: Decimal):
        """Add realized P&L to the portfolio's running total for today."""
        self._roll_day(portfolio_id)
        self._daily_pnl[portfolio_id] += realized_pnl

        logger.info(
            "risk_manager.pnl_update",
            portfolio_id=portfolio_id,
            realized=str(realized_pnl),
            daily_pnl=str(self._daily_pnl[portfolio_id]),
        )

    def get_daily_pnl(self, portfolio_id: str) -> Decimal:
        self._roll_day(portfolio_id)
        return self._daily_pnl[portfolio_id]

    def _roll_day(self, portfolio_id: str):
        today = datetime.utcnow().date()
        if self._pnl_day.get(portfolio_id) != today:
            self._pnl_day[portfolio_id] = today
            self._daily_pnl[portfolio_id] = Decimal("0")

    # === Drawdown / Emergency Stop ===

    def update_drawdown(self, portfolio_id: str, total_value: Decimal) -> Decimal:
        """Update the high-water mark and return the current drawdown fraction."""
        peak = self._high_water_marks.get(portfolio_id)
        if peak is None or total_value > peak:
            self._high_water_marks[portfolio_id] = total_value
            peak = total_value

        if peak <= 0 or total_value >= peak:
            return Decimal("0")
        return (peak - total_value) / peak

    async def check_emergency_stop(
        self,
        portfolio_id: str,
        portfolio: Optional[PortfolioSnapshot] = None,
    ) -> bool:
        """
        True when the portfolio's drawdown has reached the emergency threshold.

        Uses ``portfolio`` when given, otherwise fetches a snapshot from the
        brokerage. Without either, no drawdown can be measured and the
        result is False.
        """
        if portfolio is None and self.broker is not None:
            portfolio = await self.broker.portfolio_snapshot(portfolio_id)
        if portfolio is None:
            return False

        drawdown = self.update_drawdown(portfolio_id, portfolio.total_value)
        breached = drawdown >= self.emergency_threshold

        if breached:
            logger.critical(
                "risk_manager.emergency_drawdown",
                portfolio_id=portfolio_id,
                drawdown=f"{drawdown:.2%}",
                threshold=f"{self.emergency_threshold:.2%}",
                peak=str(self._high_water_marks.get(portfolio_id)),
                total_value=str(portfolio.total_value),
            )
        return breached

    def trigger_emergency_stop(self, portfolio_id: str, reason: str):
        """
        Halt all new trades for a portfolio.

        Manual intervention via ``reset_emergency_stop`` is required to resume.
        """
        if portfolio_id in self._emergency_stops:
            return
        stop = EmergencyStop(reason=reason)
        self._emergency_stops[portfolio_id] = stop

        logger.critical(
            "risk_manager.emergency_stop_triggered",
            portfolio_id=portfolio_id,
            reason=reason,
            triggered_at=stop.triggered_at.isoformat(),
            daily_pnl=str(self.get_daily_pnl(portfolio_id)),
        )

    def reset_emergency_stop(self, portfolio_id: str, authorized_by: Optional[str] = None) -> bool:
        """
        Manually reset an emergency stop.

        The high-water mark is reset too, so the next snapshot becomes the
        new peak instead of re-triggering immediately.

        Returns:
            True if a stop was active and has been cleared
        """
        stop = self._emergency_stops.pop(portfolio_id, None)
        if stop is None:
            return False

        self._high_water_marks.pop(portfolio_id, None)
        logger.warning(
            "risk_manager.emergency_stop_reset",
            portfolio_id=portfolio_id,
            was_triggered_at=stop.triggered_at.isoformat(),
            authorized_by=authorized_by,
        )
        return True

    def is_emergency_stopped(self, portfolio_id: str) -> bool:
        return portfolio_id in self._emergency_stops

    # === Protective Prices ===

    def calculate_stop_loss(
        self,
        entry_price: Decimal,
        side: OrderSide,
        stop_pct: Optional[Decimal] = None,
    ) -> Decimal:
        """Stop-loss price ``stop_pct`` percent away from entry (default 5%)."""
        pct = stop_pct if stop_pct is not None else Decimal(str(self.config.stop_loss_pct))
        distance = entry_price * pct / 100
        if side == OrderSide.BUY:
            return entry_price - distance
        return entry_price + distance

    def calculate_take_profit(
        self,
        entry_price: Decimal,
        side: OrderSide,
        take_profit_pct: Optional[Decimal] = None,
    ) -> Decimal:
        """Take-profit price ``take_profit_pct`` percent away from entry (default 10%)."""
        pct = take_profit_pct if take_profit_pct is not None else Decimal(str(self.config.take_profit_pct))
        distance = entry_price * pct / 100
        if side == OrderSide.BUY:
            return entry_price + distance
        return entry_price - distance

    # === Reporting ===

    def get_risk_report(self, portfolio_id: str) -> Dict[str, Any]:
        peak = self._high_water_marks.get(portfolio_id)
        stop = self._emergency_stops.get(portfolio_id)
        return {
            "portfolio_id": portfolio_id,
            "daily_pnl": str(self.get_daily_pnl(portfolio_id)),
            "max_daily_loss": str(self.default_limits.max_daily_loss),
            "high_water_mark": str(peak) if peak is not None else None,
            "emergency_threshold": float(self.emergency_threshold),
            "emergency_stop": stop is not None,
            "emergency_reason": stop.reason if stop else None,
            "recent_rejections": [
                r for r in self.rejected_trades[-20:] if r["portfolio_id"] == portfolio_id
            ],
        }

    def _log_trade_rejected(self, request: TradeRequest, rule: str, reason: str):
        self.rejected_trades.append({
            "timestamp": datetime.utcnow().isoformat(),
            "portfolio_id": request.portfolio_id,
            "symbol": request.symbol,
            "side": request.side.value,
            "quantity": str(request.quantity),
            "rule_triggered": rule,
            "reason": reason,
        })

        # Keep only last 1000 rejections
        if len(self.rejected_trades) > 1000:
            self.rejected_trades = self.rejected_trades[-1000:]


# === Convenience Functions ===

def create_risk_manager(broker=None) -> RiskManager:
    """Factory function to create a configured RiskManager instance."""
    return RiskManager(broker=broker)
