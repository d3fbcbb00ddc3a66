"""Unit tests for the rule engine."""
import pytest
from decimal import Decimal

from autotrader.core.exceptions import RuleNotFoundError, RuleValidationError
from autotrader.core.models import (
    Action, Condition, ConditionOperator, LogicalConnector, OrderSide,
    PriceType, Recommendation, RuleType, SizingMethod, TradingRule,
)
from autotrader.rules.engine import RuleEngine
from autotrader.rules.fields import is_known_field, resolve_field

from tests.conftest import PORTFOLIO_ID, make_rule


@pytest.fixture
def engine():
    return RuleEngine()


def cond(field, operator, value, connector=LogicalConnector.AND):
    return Condition(field=field, operator=operator, value=value, logical_connector=connector)


# =============================================================================
# Field Resolution
# =============================================================================

class TestFieldResolution:
    """Test context field selectors."""

    def test_resolves_technical_and_position_fields(self, context):
        assert resolve_field("technical.rsi", context) == 25.0
        assert resolve_field("position.quantity", context) == Decimal("20")
        assert resolve_field("position.pnl_percentage", context) > 0

    def test_cash_percentage(self, context):
        assert resolve_field("portfolio_cash_percentage", context) == Decimal("90")

    def test_unknown_field_resolves_to_none(self, context):
        assert resolve_field("technical.stochastic", context) is None
        assert not is_known_field("technical.stochastic")

    def test_recommendation_fields_without_recommendation(self, context):
        assert resolve_field("recommendation.confidence", context) is None

    def test_neutral_defaults(self, context):
        assert resolve_field("market_hours", context) is True
        assert resolve_field("volume_spike", context) is False


# =============================================================================
# Evaluation
# =============================================================================

class TestEvaluation:
    """Test rule and condition evaluation."""

    def test_single_condition_triggers(self, engine, buy_rule, context):
        assert engine.evaluate(buy_rule, context) is True

    def test_single_condition_does_not_trigger(self, engine, sell_rule, context):
        assert engine.evaluate(sell_rule, context) is False

    def test_inactive_rule_never_triggers(self, engine, context):
        rule = make_rule(is_active=False)
        assert engine.evaluate(rule, context) is False

    def test_rule_without_conditions_always_triggers(self, engine, context):
        rule = TradingRule(portfolio_id=PORTFOLIO_ID, name="Always")
        assert engine.evaluate(rule, context) is True

    def test_connectors_fold_left_to_right(self, engine, context):
        """((True AND false) AND anything) OR true == true."""
        rule = TradingRule(
            portfolio_id=PORTFOLIO_ID,
            name="Fold",
            conditions=[
                cond("technical.rsi", ConditionOperator.GREATER_THAN, 50),
                cond("current_price", ConditionOperator.LESS_THAN, 10, LogicalConnector.OR),
                cond("symbol", ConditionOperator.EQUALS, "AAPL"),
            ],
        )
        assert engine.evaluate(rule, context) is True

    def test_and_chain_short_result(self, engine, context):
        rule = TradingRule(
            portfolio_id=PORTFOLIO_ID,
            name="And",
            conditions=[
                cond("technical.rsi", ConditionOperator.LESS_THAN, 30),
                cond("current_price", ConditionOperator.GREATER_THAN, 100),
            ],
        )
        assert engine.evaluate(rule, context) is False

    def test_unknown_field_comparison_is_false(self, engine, context):
        condition = cond("technical.stochastic", ConditionOperator.LESS_THAN, 100)
        assert engine.evaluate_condition(condition, context) is False

    def test_equals_and_not_equals(self, engine, context):
        assert engine.evaluate_condition(cond("symbol", ConditionOperator.EQUALS, "AAPL"), context)
        assert engine.evaluate_condition(cond("symbol", ConditionOperator.NOT_EQUALS, "MSFT"), context)

    def test_numeric_comparison_coerces_strings(self, engine, context):
        condition = cond("current_price", ConditionOperator.GREATER_EQUAL, "50")
        assert engine.evaluate_condition(condition, context) is True

    def test_recommendation_confidence(self, engine, context):
        context.recommendation = Recommendation(type="BUY", confidence=0.9)
        condition = cond("recommendation.confidence", ConditionOperator.GREATER_THAN, 0.8)
        assert engine.evaluate_condition(condition, context) is True

    def test_evaluate_rules_returns_priority_order(self, engine, context):
        low = make_rule(name="low", priority=1)
        high = make_rule(name="high", priority=5)
        quiet = make_rule(name="quiet", value=10)
        assert engine.evaluate_rules([low, quiet, high], context) == [high, low]


# =============================================================================
# Prioritization and Conflicts
# =============================================================================

class TestPrioritization:
    """Test ordering and conflict resolution."""

    def test_priority_descending_with_none_as_zero(self, engine):
        a = make_rule(name="a", priority=None)
        b = make_rule(name="b", priority=3)
        c = make_rule(name="c", priority=-1)
        assert engine.prioritize_rules([a, b, c]) == [b, a, c]

    def test_equal_priority_orders_exit_risk_entry(self, engine):
        entry = make_rule(name="entry", priority=1, rule_type=RuleType.ENTRY)
        risk = make_rule(name="risk", priority=1, rule_type=RuleType.RISK)
        exit_ = make_rule(name="exit", priority=1, rule_type=RuleType.EXIT)
        assert engine.prioritize_rules([entry, risk, exit_]) == [exit_, risk, entry]

    def test_conflict_resolution_keeps_highest_priority(self, engine):
        a = make_rule(name="a", priority=1)
        b = make_rule(name="b", priority=9)
        assert engine.conflict_resolution([a, b]) == [b]

    def test_conflict_resolution_tie_breaks_by_id(self, engine):
        a = make_rule(name="a", priority=2, id="rule-b")
        b = make_rule(name="b", priority=2, id="rule-a")
        assert engine.conflict_resolution([a, b]) == [b]
        assert engine.conflict_resolution([b, a]) == [b]

    def test_conflict_resolution_empty_and_single(self, engine, buy_rule):
        assert engine.conflict_resolution([]) == []
        assert engine.conflict_resolution([buy_rule]) == [buy_rule]


# =============================================================================
# Actions
# =============================================================================

class TestExecuteActions:
    """Test turning actions into order intents."""

    def test_fixed_buy_intent(self, engine, buy_rule, context):
        [intent] = engine.execute_actions(buy_rule.actions, context, rule_id=buy_rule.id)

        assert intent.is_actionable
        assert intent.type == OrderSide.BUY
        assert intent.quantity == Decimal("20")
        assert intent.price == Decimal("50")
        assert intent.rule_id == buy_rule.id

    def test_full_position_sell_intent(self, engine, sell_rule, context):
        [intent] = engine.execute_actions(sell_rule.actions, context)
        assert intent.type == OrderSide.SELL
        assert intent.quantity == Decimal("20")

    def test_limit_price_offset(self, engine, context):
        action = Action(
            type=OrderSide.BUY,
            sizing_method=SizingMethod.PERCENTAGE,
            size_value=Decimal("5"),
            price_type=PriceType.LIMIT,
            price_offset=Decimal("-1.5"),
        )
        [intent] = engine.execute_actions([action], context)

        assert intent.price == Decimal("48.5")
        assert intent.price_type == PriceType.LIMIT
        assert intent.quantity == Decimal("10")

    def test_failing_action_reports_error_and_keeps_others(self, engine, buy_rule, context):
        broken = Action(type=OrderSide.BUY)
        results = engine.execute_actions([broken] + buy_rule.actions, context)

        assert results[0].error == "Sizing method is required"
        assert not results[0].is_actionable
        assert results[1].is_actionable

    def test_zero_quantity_is_not_actionable(self, engine, context):
        action = Action(type=OrderSide.BUY, sizing_method=SizingMethod.FIXED, size_value=Decimal("10"))
        [intent] = engine.execute_actions([action], context)
        assert intent.quantity == Decimal("0")
        assert not intent.is_actionable


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Test rule validation."""

    def test_valid_rule(self, engine, buy_rule):
        result = engine.validate(buy_rule)
        assert result.is_valid
        assert result.warnings == ["No priority set, defaulting to 0"]

    def test_collects_every_error(self, engine):
        rule = TradingRule(
            portfolio_id=PORTFOLIO_ID,
            name=" ",
            conditions=[Condition(field="bogus", value="")],
            actions=[Action(sizing_method=SizingMethod.FIXED)],
        )
        errors = engine.validate(rule).errors

        assert "Rule name is required" in errors
        assert "Condition 1: Unknown field 'bogus'" in errors
        assert "Condition 1: Operator is required" in errors
        assert "Condition 1: Value is required" in errors
        assert "Action 1: Type is required" in errors
        assert "Action 1: Size value is required for fixed sizing" in errors

    def test_missing_conditions_and_actions(self, engine):
        rule = TradingRule(portfolio_id=PORTFOLIO_ID, name="Empty", priority=1)
        result = engine.validate(rule)

        assert not result.is_valid
        assert "Rule must have at least one condition" in result.errors
        assert "Rule must have at least one action" in result.errors
        assert result.warnings == []

    def test_validate_or_raise(self, engine):
        rule = TradingRule(portfolio_id=PORTFOLIO_ID, name="Empty")
        with pytest.raises(RuleValidationError) as exc:
            engine.validate_or_raise(rule)
        assert "Rule must have at least one action" in exc.value.errors


# =============================================================================
# Rule Storage
# =============================================================================

class TestRuleStorage:
    """Test rule CRUD through the repository."""

    @pytest.mark.asyncio
    async def test_create_and_list_active(self, test_database, buy_rule):
        engine = RuleEngine(repository=test_database)
        await engine.create_rule(buy_rule)

        rules = await engine.get_active_rules(PORTFOLIO_ID)
        assert [r.id for r in rules] == [buy_rule.id]

    @pytest.mark.asyncio
    async def test_create_invalid_rule_raises(self, test_database):
        engine = RuleEngine(repository=test_database)
        with pytest.raises(RuleValidationError):
            await engine.create_rule(TradingRule(portfolio_id=PORTFOLIO_ID, name="Empty"))

    @pytest.mark.asyncio
    async def test_toggle_and_delete(self, test_database, buy_rule):
        engine = RuleEngine(repository=test_database)
        await engine.create_rule(buy_rule)

        toggled = await engine.toggle_rule(buy_rule.id, False)
        assert toggled.is_active is False
        assert await engine.get_active_rules(PORTFOLIO_ID) == []

        await engine.delete_rule(buy_rule.id)
        with pytest.raises(RuleNotFoundError):
            await engine.delete_rule(buy_rule.id)

    @pytest.mark.asyncio
    async def test_update_missing_rule_raises(self, test_database, buy_rule):
        engine = RuleEngine(repository=test_database)
        with pytest.raises(RuleNotFoundError):
            await engine.update_rule(buy_rule)

    @pytest.mark.asyncio
    async def test_storage_requires_repository(self, engine):
        with pytest.raises(RuntimeError):
            await engine.get_active_rules(PORTFOLIO_ID)
