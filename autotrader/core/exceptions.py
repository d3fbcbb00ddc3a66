"""Exception hierarchy for the automated trading core.

Callers catch the base ``AutoTraderError`` when they only need to know that
the trading core refused an operation, and the specific subclasses when the
reaction differs (e.g. surfacing a 404 for ``NotFoundError``).
"""
from decimal import Decimal
from typing import List, Optional


class AutoTraderError(Exception):
    """Base exception for all trading-core errors."""


# =============================================================================
# Validation
# =============================================================================

class RuleValidationError(AutoTraderError):
    """Raised when a rule or strategy definition is malformed.

    Attributes:
        errors: Human-readable reasons, one per problem found
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class InvalidStateTransitionError(AutoTraderError):
    """Raised when an order or strategy instance is moved along a forbidden edge."""


# =============================================================================
# Risk / execution
# =============================================================================

class RiskRejection(AutoTraderError):
    """Raised when a trade breaches a risk limit.

    Attributes:
        reason: Why the trade was rejected
        adjusted_quantity: A smaller quantity that would pass, if one exists
    """

    def __init__(self, reason: str, adjusted_quantity: Optional[Decimal] = None):
        super().__init__(reason)
        self.reason = reason
        self.adjusted_quantity = adjusted_quantity


class ExecutionFailure(AutoTraderError):
    """Raised when the brokerage cannot fill a trade."""


class InsufficientFundsError(ExecutionFailure):
    """Cash balance does not cover the buy."""


class InsufficientPositionError(ExecutionFailure):
    """Held quantity does not cover the sell."""


class MarketDataError(AutoTraderError):
    """Raised when market data cannot be retrieved."""


# =============================================================================
# Lookup
# =============================================================================

class NotFoundError(AutoTraderError):
    """Raised when a rule, strategy, order, portfolio or backtest id is unknown."""


class RuleNotFoundError(NotFoundError):
    pass


class StrategyNotFoundError(NotFoundError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class PortfolioNotFoundError(NotFoundError):
    pass


class BacktestNotFoundError(NotFoundError):
    pass


# =============================================================================
# Orchestration / simulation
# =============================================================================

class StrategyAlreadyDeployedError(AutoTraderError):
    """Raised when deploying a strategy id that already has a live instance."""


class AccessDeniedError(AutoTraderError):
    """Raised when a user operates on a strategy instance they do not own."""


class BacktestError(AutoTraderError):
    """Raised when a backtest cannot run."""
