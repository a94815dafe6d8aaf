"""
Branching Logic - evaluate condition nodes

Supports:
- Simple comparisons (eq, ne, contains, regex, ...)
- Rule groups combined with AND / OR
- defaultPath when a rule cannot be evaluated

A condition node always selects exactly one of its two output handles,
'true' or 'false'.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from flow_automation.flow_engine.nodes import ConditionConfig
from flow_automation.flow_engine.variable_resolver import VariableResolver
from flow_automation.utils import get_path

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    """Condition operators for condition nodes"""
    EQUALS = "eq"
    NOT_EQUALS = "ne"
    GREATER_THAN = "gt"
    GREATER_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_OR_EQUAL = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class LogicalOperator(str, Enum):
    """Logical operators for combining rules"""
    AND = "AND"
    OR = "OR"


# Names accepted from the editor besides the canonical ones
OPERATOR_ALIASES = {
    'equals': ConditionOperator.EQUALS,
    'not_equals': ConditionOperator.NOT_EQUALS,
    'greater_than': ConditionOperator.GREATER_THAN,
    'greater_or_equal': ConditionOperator.GREATER_OR_EQUAL,
    'less_than': ConditionOperator.LESS_THAN,
    'less_or_equal': ConditionOperator.LESS_OR_EQUAL,
    '==': ConditionOperator.EQUALS,
    '!=': ConditionOperator.NOT_EQUALS,
    '>': ConditionOperator.GREATER_THAN,
    '>=': ConditionOperator.GREATER_OR_EQUAL,
    '<': ConditionOperator.LESS_THAN,
    '<=': ConditionOperator.LESS_OR_EQUAL,
}


def parse_operator(name: str) -> ConditionOperator:
    """
    Raises:
        ValueError: unknown operator
    """
    key = str(name).strip().lower()
    if key in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[key]
    return ConditionOperator(key)


class RuleEvaluationError(Exception):
    """A rule could not be evaluated (bad operand types, bad regex, unknown operator)"""


@dataclass
class ConditionOutcome:
    result: bool
    used_default: bool = False
    rules: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def handle(self) -> str:
        return 'true' if self.result else 'false'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'result': self.result,
            'handle': self.handle,
            'usedDefault': self.used_default,
            'rules': self.rules,
        }


class ConditionEvaluator:
    """
    Evaluates a ConditionConfig against a node's input.

    A rule field is either a dotted path into the input ("customer.tier")
    or a template ("{{trigger.customer.tier}}").

    Usage:
        outcome = ConditionEvaluator(resolver, input_data).evaluate(config)
        outcome.handle  # 'true' or 'false'
    """

    def __init__(self, resolver: VariableResolver, input_data: Optional[Mapping[str, Any]] = None):
        self.resolver = resolver
        self.input_data = input_data or {}

    def evaluate(self, config: ConditionConfig) -> ConditionOutcome:
        details = []
        results = []

        try:
            for rule in config.rules:
                actual = self._field_value(rule.field)
                matched = self._check_condition(actual, rule.operator, rule.value)
                results.append(matched)
                details.append({'field': rule.field, 'operator': rule.operator, 'value': rule.value, 'matched': matched})
        except RuleEvaluationError as e:
            if config.default_path is None:
                logger.warning(f"Condition could not be evaluated, taking 'false': {e}")
                return ConditionOutcome(result=False, used_default=True, rules=details)
            logger.info(f"Condition could not be evaluated, taking defaultPath '{config.default_path}': {e}")
            return ConditionOutcome(result=config.default_path == 'true', used_default=True, rules=details)

        if config.logical_operator == LogicalOperator.OR.value:
            result = any(results)
        else:
            result = all(results)

        return ConditionOutcome(result=result, rules=details)

    def _field_value(self, field_ref: str) -> Any:
        if isinstance(field_ref, str) and VariableResolver.VARIABLE_PATTERN.search(field_ref):
            return self.resolver.resolve(field_ref)
        return get_path(self.input_data, str(field_ref))

    def _check_condition(self, actual: Any, operator: str, expected: Any) -> bool:
        """
        Check a simple comparison.

        Raises:
            RuleEvaluationError: the comparison is not defined for these operands
        """
        try:
            op = parse_operator(operator)
        except ValueError:
            raise RuleEvaluationError(f"Unknown operator: {operator}")

        try:
            if op == ConditionOperator.EQUALS:
                return actual == expected

            elif op == ConditionOperator.NOT_EQUALS:
                return actual != expected

            elif op == ConditionOperator.CONTAINS:
                if isinstance(actual, (list, tuple, dict)):
                    return expected in actual
                return str(expected) in str(actual)

            elif op == ConditionOperator.NOT_CONTAINS:
                if isinstance(actual, (list, tuple, dict)):
                    return expected not in actual
                return str(expected) not in str(actual)

            elif op == ConditionOperator.STARTS_WITH:
                return str(actual).startswith(str(expected))

            elif op == ConditionOperator.ENDS_WITH:
                return str(actual).endswith(str(expected))

            elif op == ConditionOperator.GREATER_THAN:
                return float(actual) > float(expected)

            elif op == ConditionOperator.GREATER_OR_EQUAL:
                return float(actual) >= float(expected)

            elif op == ConditionOperator.LESS_THAN:
                return float(actual) < float(expected)

            elif op == ConditionOperator.LESS_OR_EQUAL:
                return float(actual) <= float(expected)

            elif op == ConditionOperator.REGEX:
                return actual is not None and re.search(str(expected), str(actual)) is not None

            elif op == ConditionOperator.IS_EMPTY:
                return actual is None or actual == "" or actual == [] or actual == {}

            elif op == ConditionOperator.IS_NOT_EMPTY:
                return not (actual is None or actual == "" or actual == [] or actual == {})

            elif op == ConditionOperator.EXISTS:
                return actual is not None

            else:  # NOT_EXISTS
                return actual is None

        except (ValueError, TypeError, re.error) as e:
            raise RuleEvaluationError(f"Cannot apply '{operator}' to {actual!r} and {expected!r}: {e}")

