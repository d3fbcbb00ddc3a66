"""Balance-based strategy presets for automatic deployment.

Accounts at or above the pattern-day-trader minimum get day-trading
presets; smaller accounts get swing-trading presets.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from autotrader.core.models import (
    DeploymentConfig, ExecutionFrequency, NotificationSettings, RiskTolerance,
    StrategyRiskLimits, TradingMode,
)

PDT_MINIMUM_BALANCE = Decimal("25000")
AGGRESSIVE_DAY_TRADING_BALANCE = Decimal("50000")
SWING_GROWTH_BALANCE = Decimal("5000")


@dataclass(frozen=True)
class StrategyPreset:
    id: str
    name: str
    description: str
    style: str
    min_balance: Decimal
    risk_tolerance: RiskTolerance
    max_positions: int
    stop_loss_pct: Decimal
    take_profit_pct: Decimal
    execution_frequency: ExecutionFrequency


PRESETS: Dict[str, StrategyPreset] = {
    preset.id: preset
    for preset in (
        StrategyPreset(
            id="day-trading-aggressive",
            name="Day Trading Aggressive",
            description="High-frequency day trading for PDT-eligible accounts",
            style="day_trading",
            min_balance=PDT_MINIMUM_BALANCE,
            risk_tolerance=RiskTolerance.AGGRESSIVE,
            max_positions=10,
            stop_loss_pct=Decimal("2"),
            take_profit_pct=Decimal("4"),
            execution_frequency=ExecutionFrequency.MINUTE,
        ),
        StrategyPreset(
            id="day-trading-conservative",
            name="Day Trading Conservative",
            description="Conservative day trading for PDT-eligible accounts",
            style="day_trading",
            min_balance=PDT_MINIMUM_BALANCE,
            risk_tolerance=RiskTolerance.CONSERVATIVE,
            max_positions=5,
            stop_loss_pct=Decimal("1.5"),
            take_profit_pct=Decimal("3"),
            execution_frequency=ExecutionFrequency.MINUTE,
        ),
        StrategyPreset(
            id="swing-trading-growth",
            name="Swing Trading Growth",
            description="Growth-focused swing trading for non-PDT accounts",
            style="swing_trading",
            min_balance=Decimal("0"),
            risk_tolerance=RiskTolerance.MODERATE,
            max_positions=3,
            stop_loss_pct=Decimal("5"),
            take_profit_pct=Decimal("10"),
            execution_frequency=ExecutionFrequency.HOUR,
        ),
        StrategyPreset(
            id="swing-trading-value",
            name="Swing Trading Value",
            description="Value-focused swing trading for smaller accounts",
            style="swing_trading",
            min_balance=Decimal("0"),
            risk_tolerance=RiskTolerance.CONSERVATIVE,
            max_positions=2,
            stop_loss_pct=Decimal("3"),
            take_profit_pct=Decimal("8"),
            execution_frequency=ExecutionFrequency.DAILY,
        ),
    )
}

# (max drawdown %, max position size %, daily loss fraction of value)
_RISK_TABLE = {
    RiskTolerance.AGGRESSIVE: (Decimal("15"), Decimal("25"), Decimal("0.05")),
    RiskTolerance.MODERATE: (Decimal("10"), Decimal("15"), Decimal("0.03")),
    RiskTolerance.CONSERVATIVE: (Decimal("5"), Decimal("10"), Decimal("0.02")),
}


def select_strategy_preset(balance: Decimal) -> StrategyPreset:
    """Pick the preset for an account balance."""
    if balance >= PDT_MINIMUM_BALANCE:
        if balance >= AGGRESSIVE_DAY_TRADING_BALANCE:
            return PRESETS["day-trading-aggressive"]
        return PRESETS["day-trading-conservative"]
    if balance >= SWING_GROWTH_BALANCE:
        return PRESETS["swing-trading-growth"]
    return PRESETS["swing-trading-value"]


def risk_limits_for(tolerance: RiskTolerance, portfolio_value: Decimal) -> StrategyRiskLimits:
    max_drawdown, max_position_size, daily_loss = _RISK_TABLE[tolerance]
    return StrategyRiskLimits(
        max_drawdown=max_drawdown,
        max_position_size=max_position_size,
        daily_loss_limit=portfolio_value * daily_loss,
        correlation_limit=Decimal("0.7"),
    )


def deployment_config_for(
    portfolio_id: str,
    balance: Decimal,
    user_id: Optional[str] = None,
    symbols=None,
) -> DeploymentConfig:
    """Paper deployment config derived from the balance's preset."""
    preset = select_strategy_preset(balance)
    return DeploymentConfig(
        mode=TradingMode.PAPER,
        portfolio_id=portfolio_id,
        user_id=user_id,
        initial_capital=balance,
        max_positions=preset.max_positions,
        risk_limits=risk_limits_for(preset.risk_tolerance, balance),
        execution_frequency=preset.execution_frequency,
        symbols=list(symbols or []),
        notifications=NotificationSettings(),
    )
