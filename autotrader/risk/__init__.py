"""Risk module for the automated trading core.

This module provides:
- Position sizing (fixed, percentage, Kelly, volatility-adjusted, risk parity)
- The risk gatekeeper with prioritized, optionally blocking risk rules
- Emergency drawdown stop per portfolio
- Pluggable risk adjusters consulted before order submission
"""

from autotrader.risk.adjusters import PassThroughRiskAdjuster, RiskAdjuster, RiskAssessment
from autotrader.risk.position_sizer import PositionSizer, SizingRecommendation, floor_units
from autotrader.risk.risk_manager import (
    RiskCheck,
    RiskLimits,
    RiskManager,
    RiskRule,
    create_risk_manager,
)

__all__ = [
    'PositionSizer',
    'SizingRecommendation',
    'floor_units',
    'RiskManager',
    'RiskCheck',
    'RiskLimits',
    'RiskRule',
    'create_risk_manager',
    'RiskAdjuster',
    'RiskAssessment',
    'PassThroughRiskAdjuster',
]
