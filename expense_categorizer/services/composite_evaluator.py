"""Composite pattern evaluation.

Conditions are hard eligibility gates and are checked before any component:
a failing condition short-circuits to False. Only then is the operator applied
(AND: all components match, OR: any, NOT: none). An empty component set never
matches.
"""

from typing import Any

import structlog

from expense_categorizer.core.enums import CompositeOperator
from expense_categorizer.services import pattern_evaluator
from expense_categorizer.services.pattern_evaluator import (
    coerce_amount,
    coerce_timestamp,
    in_time_range,
    minute_of_day,
    read_field,
    text_field,
)
from expense_categorizer.services.rule_snapshot import CompiledComposite, ConditionSet

logger = structlog.get_logger()


def conditions_pass(conditions: ConditionSet | None, expense: Any) -> bool:
    """Check every eligibility condition; a missing amount or timestamp fails its condition."""
    if conditions is None:
        return True

    if conditions.min_amount is not None or conditions.max_amount is not None:
        amount = coerce_amount(read_field(expense, "amount"))
        if amount is None:
            return False
        if conditions.min_amount is not None and amount < conditions.min_amount:
            return False
        if conditions.max_amount is not None and amount > conditions.max_amount:
            return False

    if conditions.days_of_week is not None or conditions.time_ranges is not None:
        timestamp = coerce_timestamp(read_field(expense, "transaction_timestamp"))
        if timestamp is None:
            return False
        if conditions.days_of_week is not None and timestamp.weekday() not in conditions.days_of_week:
            return False
        if conditions.time_ranges is not None:
            minute = minute_of_day(timestamp)
            if not any(in_time_range(minute, start, end) for start, end in conditions.time_ranges):
                return False

    if conditions.merchant_blacklist:
        merchant = text_field(expense, "merchant_name")
        if merchant:
            merchant = merchant.lower()
            if any(blocked in merchant for blocked in conditions.merchant_blacklist):
                return False

    return True


def matches(composite: CompiledComposite, expense: Any) -> bool:
    """True when conditions pass and the operator holds over the component patterns."""
    if not composite.conditions_valid:
        return False
    try:
        if not conditions_pass(composite.conditions, expense):
            return False

        if not composite.components:
            return False

        results = (pattern_evaluator.matches(p, expense) for p in composite.components)
        if composite.operator == CompositeOperator.AND:
            return all(results)
        if composite.operator == CompositeOperator.OR:
            return any(results)
        return not any(results)
    except Exception as exc:
        logger.warning("composite_evaluation_degraded", composite_id=composite.id, error=str(exc))
        return False


def describe(composite: CompiledComposite) -> str:
    """Human readable rule, e.g. 'merchant:uber OR merchant:lyft'."""
    parts = [f"{p.pattern_type.value}:{p.pattern_value}" for p in composite.components]
    if not parts:
        return "(empty)"
    if composite.operator == CompositeOperator.NOT:
        inner = " OR ".join(parts)
        return f"NOT ({inner})" if len(parts) > 1 else f"NOT {inner}"
    return f" {composite.operator.value} ".join(parts)
