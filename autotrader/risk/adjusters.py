"""Pluggable risk adjustment applied by the orchestrator before submission.

Model-driven risk assessment and position optimisation sit behind this
interface. The default implementation approves everything and leaves
quantities unchanged.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from autotrader.core.models import TradingContext, TradingRule


@dataclass
class RiskAssessment:
    approved: bool = True
    reason: str = ""


class RiskAdjuster(ABC):
    """Second-opinion risk model consulted per triggered rule."""

    @abstractmethod
    async def assess(self, rule: TradingRule, context: TradingContext) -> RiskAssessment:
        """Decide whether the triggered rule may trade in this context."""

    @abstractmethod
    async def adjust_quantity(self, quantity: Decimal, context: TradingContext) -> Decimal:
        """Return the quantity to submit, possibly reduced."""


class PassThroughRiskAdjuster(RiskAdjuster):

    async def assess(self, rule: TradingRule, context: TradingContext) -> RiskAssessment:
        return RiskAssessment(approved=True)

    async def adjust_quantity(self, quantity: Decimal, context: TradingContext) -> Decimal:
        return quantity
