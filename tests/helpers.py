"""Builders shared by test modules."""

from datetime import datetime
from decimal import Decimal

from expense_categorizer.core.enums import CompositeOperator, PatternType
from expense_categorizer.models.categorization_pattern import CategorizationPattern
from expense_categorizer.schemas.expense import ExpenseInput
from expense_categorizer.services.pattern_values import validate_pattern_value
from expense_categorizer.services.rule_snapshot import CompiledComposite, CompiledPattern, ConditionSet


def compiled_pattern(pattern_type, value, pattern_id=1, category_id=1, **kwargs) -> CompiledPattern:
    result = validate_pattern_value(pattern_type, value)
    assert result.ok, result.errors
    return CompiledPattern(
        id=pattern_id,
        category_id=category_id,
        pattern_type=PatternType(pattern_type),
        pattern_value=result.normalized,
        value=result.value,
        **kwargs,
    )


def compiled_composite(operator, components, conditions=None, composite_id=1, category_id=1, **kwargs):
    return CompiledComposite(
        id=composite_id,
        category_id=category_id,
        name=f"composite {composite_id}",
        operator=CompositeOperator(operator),
        pattern_ids=tuple(p.id for p in components),
        components=tuple(components),
        conditions=ConditionSet.from_dict(conditions),
        **kwargs,
    )


def expense(merchant_name=None, description=None, amount=None, at=None, **kwargs) -> ExpenseInput:
    return ExpenseInput(
        merchant_name=merchant_name,
        description=description,
        amount=Decimal(str(amount)) if amount is not None else None,
        transaction_timestamp=at,
        **kwargs,
    )


def at(hour, minute=0, day=3) -> datetime:
    """Timestamp in June 2024; day 3 is a Monday, day 1 a Saturday."""
    return datetime(2024, 6, day, hour, minute)


async def add_pattern(db, category_id, pattern_type, value, **kwargs) -> CategorizationPattern:
    """Insert a pattern row directly, bypassing the admin service."""
    result = validate_pattern_value(pattern_type, value)
    assert result.ok, result.errors
    usage = kwargs.pop("usage_count", 0)
    success = kwargs.pop("success_count", 0)
    pattern = CategorizationPattern(
        category_id=category_id,
        pattern_type=PatternType(pattern_type).value,
        pattern_value=result.normalized,
        usage_count=usage,
        success_count=success,
        success_rate=success / usage if usage else 0.0,
        **kwargs,
    )
    db.add(pattern)
    await db.commit()
    return pattern
