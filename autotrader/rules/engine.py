"""Rule engine: evaluates declarative trading rules against a trading context.

A rule's conditions are folded left to right. The running result starts as
True with an AND connector; each condition is combined with the running
result using the connector carried by the *previous* condition. This is a
flat fold, not a boolean expression tree:

    c1 (AND) c2 (OR) c3   ==   ((True AND c1) AND c2) OR c3

Triggered rules are narrowed to a single winner per symbol by
``conflict_resolution`` before any action is turned into an order intent.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from autotrader.core.exceptions import RuleNotFoundError, RuleValidationError
from autotrader.core.models import (
    Action, ActionResult, Condition, ConditionOperator, LogicalConnector,
    OrderSide, PositionSizeRequest, PriceType, SizingMethod, TradingContext,
    TradingRule,
)
from autotrader.risk.position_sizer import PositionSizer
from autotrader.rules.fields import is_known_field, resolve_field

logger = structlog.get_logger(__name__)


@dataclass
class RuleValidationResult:
    """Outcome of validating a rule definition.

    Attributes:
        is_valid: True when no errors were found
        errors: Problems that block saving the rule
        warnings: Problems that are defaulted rather than rejected
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# Sizing methods whose size_value is mandatory
_SIZE_VALUE_REQUIRED = (SizingMethod.FIXED, SizingMethod.PERCENTAGE)


def _to_number(value: Any) -> float:
    """Coerce a value for ordering comparisons. Unusable values become NaN."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


class RuleEngine:
    """
    Evaluates, validates and prioritizes trading rules.

    The engine is stateless apart from its collaborators: a PositionSizer
    used by ``execute_actions`` and an optional rule repository (anything
    exposing the Database rule methods) used for rule CRUD.
    """

    def __init__(self, position_sizer: Optional[PositionSizer] = None, repository=None):
        self.position_sizer = position_sizer or PositionSizer()
        self.repository = repository

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(self, rule: TradingRule, context: TradingContext) -> bool:
        """Return True if the rule triggers for this context.

        Inactive rules never trigger; active rules with no conditions always
        do. Any error while evaluating makes the rule not trigger.
        """
        if not rule.is_active:
            return False

        try:
            result = True
            connector = LogicalConnector.AND

            for condition in rule.conditions:
                matched = self.evaluate_condition(condition, context)
                if connector == LogicalConnector.AND:
                    result = result and matched
                else:
                    result = result or matched
                connector = condition.logical_connector or LogicalConnector.AND

            return result

        except Exception as e:
            logger.error(
                "rule_engine.evaluation_error",
                rule_id=rule.id,
                rule_name=rule.name,
                error=str(e),
            )
            return False

    def evaluate_condition(self, condition: Condition, context: TradingContext) -> bool:
        """Compare one resolved context field against the condition's literal."""
        actual = resolve_field(condition.field, context)
        expected = condition.value
        operator = condition.operator

        if operator == ConditionOperator.EQUALS:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != expected

        left = _to_number(actual)
        right = _to_number(expected)

        if operator == ConditionOperator.GREATER_THAN:
            return left > right
        if operator == ConditionOperator.LESS_THAN:
            return left < right
        if operator == ConditionOperator.GREATER_EQUAL:
            return left >= right
        if operator == ConditionOperator.LESS_EQUAL:
            return left <= right

        logger.warning("rule_engine.unknown_operator", operator=operator, field=condition.field)
        return False

    def evaluate_rules(self, rules: List[TradingRule], context: TradingContext) -> List[TradingRule]:
        """Return the rules that trigger, in priority order."""
        return [rule for rule in self.prioritize_rules(rules) if self.evaluate(rule, context)]

    # =========================================================================
    # Actions
    # =========================================================================

    def calculate_price(self, action: Action, context: TradingContext) -> Decimal:
        if action.price_type in (PriceType.LIMIT, PriceType.STOP):
            return context.current_price + (action.price_offset or Decimal("0"))
        return context.current_price

    def execute_actions(
        self,
        actions: List[Action],
        context: TradingContext,
        rule_id: Optional[str] = None,
    ) -> List[ActionResult]:
        """Turn rule actions into unexecuted order intents.

        Nothing is submitted here. A failing action is reported on its
        ``error`` field and does not affect the others.
        """
        results = []

        for action in actions:
            try:
                sizing = self._size_action(action, context)
                results.append(ActionResult(
                    type=action.type,
                    symbol=context.symbol,
                    quantity=sizing.quantity,
                    price=self.calculate_price(action, context),
                    price_type=action.price_type,
                    dollar_amount=sizing.dollar_amount,
                    reasoning=sizing.reasoning,
                    rule_id=rule_id,
                    timestamp=datetime.utcnow(),
                ))
            except Exception as e:
                logger.error(
                    "rule_engine.action_error",
                    rule_id=rule_id,
                    symbol=context.symbol,
                    action_type=action.type,
                    error=str(e),
                )
                results.append(ActionResult(
                    type=action.type,
                    symbol=context.symbol,
                    price_type=action.price_type,
                    rule_id=rule_id,
                    error=str(e),
                ))

        return results

    def _size_action(self, action: Action, context: TradingContext):
        if action.type is None:
            raise ValueError("Action type is required")
        if action.sizing_method is None:
            raise ValueError("Sizing method is required")

        position = context.position_for()
        held = position.quantity if position else Decimal("0")
        params: Dict[str, Any] = dict(action.params)
        volatility = None
        if context.technical_indicators is not None:
            volatility = context.technical_indicators.volatility

        request = PositionSizeRequest(
            portfolio_value=context.portfolio_value,
            current_price=context.current_price,
            symbol=context.symbol,
            available_capital=context.cash_balance if action.type == OrderSide.BUY else None,
            held_quantity=held,
            volatility=params.pop("volatility", volatility),
            win_rate=params.pop("win_rate", None),
            avg_win=params.pop("avg_win", None),
            avg_loss=params.pop("avg_loss", None),
        )

        method = action.sizing_method
        if method == SizingMethod.FIXED:
            params["dollar_amount"] = action.size_value
        elif method == SizingMethod.PERCENTAGE:
            params["percentage"] = action.size_value

        return self.position_sizer.calculate_position_size(method, request, params)

    # =========================================================================
    # Ordering / Conflicts
    # =========================================================================

    def prioritize_rules(self, rules: List[TradingRule]) -> List[TradingRule]:
        """Stable sort: priority descending, then exit before risk before entry."""
        return sorted(
            rules,
            key=lambda r: (-r.effective_priority, r.rule_type.evaluation_rank),
        )

    def conflict_resolution(self, triggered_rules: List[TradingRule]) -> List[TradingRule]:
        """Keep only the single highest-priority triggered rule.

        Equal top priorities are broken by ascending rule id so the winner
        does not depend on the order the caller supplied.
        """
        if len(triggered_rules) <= 1:
            return list(triggered_rules)

        winner = min(triggered_rules, key=lambda r: (-r.effective_priority, r.id))

        logger.debug(
            "rule_engine.conflict_resolved",
            candidates=len(triggered_rules),
            winner=winner.id,
            priority=winner.effective_priority,
        )
        return [winner]

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, rule: TradingRule) -> RuleValidationResult:
        """Check a rule definition and list every problem found."""
        errors: List[str] = []
        warnings: List[str] = []

        if not rule.name or not rule.name.strip():
            errors.append("Rule name is required")

        if not rule.conditions:
            errors.append("Rule must have at least one condition")
        for i, condition in enumerate(rule.conditions, start=1):
            if not condition.field:
                errors.append(f"Condition {i}: Field is required")
            elif not is_known_field(condition.field):
                errors.append(f"Condition {i}: Unknown field '{condition.field}'")
            if condition.operator is None:
                errors.append(f"Condition {i}: Operator is required")
            if condition.value is None or condition.value == "":
                errors.append(f"Condition {i}: Value is required")

        if not rule.actions:
            errors.append("Rule must have at least one action")
        for i, action in enumerate(rule.actions, start=1):
            if action.type is None:
                errors.append(f"Action {i}: Type is required")
            if action.sizing_method is None:
                errors.append(f"Action {i}: Sizing method is required")
            elif action.sizing_method in _SIZE_VALUE_REQUIRED and action.size_value is None:
                errors.append(
                    f"Action {i}: Size value is required for {action.sizing_method.value} sizing"
                )

        if rule.priority is None:
            warnings.append("No priority set, defaulting to 0")

        return RuleValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def validate_or_raise(self, rule: TradingRule) -> RuleValidationResult:
        result = self.validate(rule)
        if not result.is_valid:
            raise RuleValidationError(
                f"Rule validation failed: {'; '.join(result.errors)}", result.errors
            )
        return result

    # =========================================================================
    # Rule Storage
    # =========================================================================

    async def get_active_rules(self, portfolio_id: str) -> List[TradingRule]:
        """Active rules for a portfolio, priority descending then oldest first."""
        return await self._require_repository().get_active_rules(portfolio_id)

    async def create_rule(self, rule: TradingRule) -> TradingRule:
        self.validate_or_raise(rule)
        await self._require_repository().save_rule(rule)
        logger.info("rule_engine.rule_created", rule_id=rule.id, portfolio_id=rule.portfolio_id)
        return rule

    async def update_rule(self, rule: TradingRule) -> TradingRule:
        repository = self._require_repository()
        if await repository.get_rule(rule.id) is None:
            raise RuleNotFoundError(f"Rule not found: {rule.id}")
        self.validate_or_raise(rule)
        rule.updated_at = datetime.utcnow()
        await repository.save_rule(rule)
        return rule

    async def toggle_rule(self, rule_id: str, is_active: bool) -> TradingRule:
        rule = await self._require_repository().set_rule_active(rule_id, is_active)
        if rule is None:
            raise RuleNotFoundError(f"Rule not found: {rule_id}")
        logger.info("rule_engine.rule_toggled", rule_id=rule_id, is_active=is_active)
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        if not await self._require_repository().delete_rule(rule_id):
            raise RuleNotFoundError(f"Rule not found: {rule_id}")

    def _require_repository(self):
        if self.repository is None:
            raise RuntimeError("RuleEngine has no rule repository configured")
        return self.repository
