"""Declarative trading rules: field selectors and the rule engine."""
from autotrader.rules.engine import RuleEngine, RuleValidationResult
from autotrader.rules.fields import FieldSelector, is_known_field, resolve_field

__all__ = [
    "RuleEngine",
    "RuleValidationResult",
    "FieldSelector",
    "is_known_field",
    "resolve_field",
]
