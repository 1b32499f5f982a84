"""
This module provides the constraint operators used by matching rules and the
function that evaluates one rule against a study, display set or instance.

A rule's ``constraint`` maps operator names to expected values::

    {"attribute": "Modality", "constraint": {"equals": {"value": "CT"}}, "weight": 1, "required": True}

If a resolved value is a list with one element and the expected value is not a
list, the element is unwrapped before comparing.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .attributes import AttributeResolver
from .models import Rule, RuleResult

logger = logging.getLogger(__name__)

CONSTRAINT_VALIDATORS: Dict[str, Callable] = {}


class ConstraintError(Exception):
    def __init__(self, message: str = None):
        self.message = message
        super().__init__(message)


def constraint_validator(operator: str, rule_message: str = "Constraint applied"):
    """Decorator registering a constraint operator under the given name."""
    def decorator(func: Callable):
        func._operator = operator
        func._rule_message = rule_message
        CONSTRAINT_VALIDATORS[operator] = func
        return func
    return decorator


def get_expected_value(expected: Any) -> Any:
    """Unwrap ``{"value": x}`` into ``x``; bare values are returned unchanged."""
    if isinstance(expected, dict) and "value" in expected:
        return expected["value"]
    return expected


def unwrap_single_value(value: Any, expected: Any = None) -> Any:
    if isinstance(value, (list, tuple)) and len(value) == 1 and not isinstance(expected, (list, tuple)):
        return value[0]
    return value


def _as_number(value: Any) -> float:
    value = unwrap_single_value(value)
    if value is None or isinstance(value, bool):
        raise ConstraintError(f"Value {value!r} is not numeric.")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConstraintError(f"Value {value!r} is not numeric.")


def _values_equal(value: Any, expected: Any) -> bool:
    value = unwrap_single_value(value, expected)
    if isinstance(value, (list, tuple)) and isinstance(expected, (list, tuple)):
        return tuple(value) == tuple(expected)
    return value == expected


def _contains(value: Any, expected: Any) -> bool:
    if value is None:
        return False
    candidates = expected if isinstance(expected, (list, tuple)) else [expected]
    if isinstance(value, str):
        return any(isinstance(c, str) and c in value for c in candidates)
    if isinstance(value, (list, tuple, set)):
        return any(c in value for c in candidates)
    return False


@constraint_validator("equals", "Value must equal the expected value.")
def validate_equals(value, expected):
    if not _values_equal(value, expected):
        raise ConstraintError(f"{value!r} must equal {expected!r}.")


@constraint_validator("doesNotEqual", "Value must differ from the expected value.")
def validate_does_not_equal(value, expected):
    if _values_equal(value, expected):
        raise ConstraintError(f"{value!r} must not equal {expected!r}.")


@constraint_validator("contains", "Value must contain the expected value.")
def validate_contains(value, expected):
    if not _contains(value, expected):
        raise ConstraintError(f"{value!r} must contain {expected!r}.")


@constraint_validator("doesNotContain", "Value must not contain the expected value.")
def validate_does_not_contain(value, expected):
    if _contains(value, expected):
        raise ConstraintError(f"{value!r} must not contain {expected!r}.")


@constraint_validator("startsWith", "Value must start with the expected prefix.")
def validate_starts_with(value, expected):
    value = unwrap_single_value(value)
    if not isinstance(value, str) or not value.startswith(str(expected)):
        raise ConstraintError(f"{value!r} must start with {expected!r}.")


@constraint_validator("endsWith", "Value must end with the expected suffix.")
def validate_ends_with(value, expected):
    value = unwrap_single_value(value)
    if not isinstance(value, str) or not value.endswith(str(expected)):
        raise ConstraintError(f"{value!r} must end with {expected!r}.")


@constraint_validator("greaterThan", "Value must be greater than the expected value.")
def validate_greater_than(value, expected):
    if not _as_number(value) > _as_number(expected):
        raise ConstraintError(f"{value!r} must be greater than {expected!r}.")


@constraint_validator("lessThan", "Value must be less than the expected value.")
def validate_less_than(value, expected):
    if not _as_number(value) < _as_number(expected):
        raise ConstraintError(f"{value!r} must be less than {expected!r}.")


@constraint_validator("range", "Value must lie within [min, max].")
def validate_range(value, expected):
    if not isinstance(expected, (list, tuple)) or len(expected) != 2:
        raise ConstraintError(f"Range constraint needs [min, max], got {expected!r}.")
    low, high = _as_number(expected[0]), _as_number(expected[1])
    number = _as_number(value)
    if not low <= number <= high:
        raise ConstraintError(f"{value!r} must lie within [{expected[0]}, {expected[1]}].")


@constraint_validator("notNull", "Value must be present.")
def validate_not_null(value, expected):
    if value is None or value == "" or (isinstance(value, (list, tuple)) and len(value) == 0):
        raise ConstraintError("Value must be present.")


def evaluate_rule(
    rule: Rule,
    subject: Any,
    context: Optional[Dict[str, Any]] = None,
    resolver: Optional[AttributeResolver] = None
) -> RuleResult:
    """
    Evaluate one matching rule against a subject.

    Args:
        rule (Rule): The rule to evaluate.
        subject (Any): The study, display set or instance being tested.
        context (Optional[Dict[str, Any]]): Extra scope for custom attributes (sibling studies,
            first instance of a display set). Passed through unmodified.
        resolver (Optional[AttributeResolver]): Resolver used to look up the attribute value.

    Returns:
        RuleResult: Pass/fail, the score contribution (the rule weight on pass, 0 on fail),
            the resolved value and any failure messages.
    """
    resolver = resolver or AttributeResolver()
    value = resolver.resolve(rule.attribute, subject, context)

    messages = []
    for operator, expected in rule.constraint.items():
        validator_func = CONSTRAINT_VALIDATORS.get(operator)
        if validator_func is None:
            messages.append(f"Unknown constraint operator '{operator}'.")
            continue
        try:
            validator_func(value, get_expected_value(expected))
        except ConstraintError as e:
            messages.append(f"{rule.attribute}: {e.message or validator_func._rule_message}")

    passed = not messages
    logger.debug(f"Rule {rule.attribute} {rule.constraint} on {value!r}: {'passed' if passed else 'failed'}")
    return RuleResult(
        rule=rule,
        passed=passed,
        score=rule.weight if passed else 0,
        value=value,
        messages=messages,
    )
