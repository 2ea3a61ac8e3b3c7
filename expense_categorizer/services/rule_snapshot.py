"""Immutable, pre-compiled views of stored rules.

The pattern cache hands these out to classification; they are never mutated, so
a snapshot can be evaluated concurrently while writers build the next one.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import ClassVar

import structlog

from expense_categorizer.core.enums import CompositeOperator, PatternType, RuleKind
from expense_categorizer.models.categorization_pattern import CategorizationPattern
from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.services.pattern_values import PatternValue, compile_pattern_value, parse_clock

logger = structlog.get_logger()

DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class CompiledPattern:
    kind: ClassVar[RuleKind] = RuleKind.PATTERN

    id: int
    category_id: int
    pattern_type: PatternType
    pattern_value: str
    value: PatternValue | None  # None when the stored value no longer parses
    confidence_weight: float = 1.0
    usage_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    active: bool = True
    user_created: bool = False

    @property
    def identity(self) -> tuple[str, int]:
        return (self.kind.value, self.id)

    @classmethod
    def from_model(cls, pattern: CategorizationPattern) -> "CompiledPattern":
        result = compile_pattern_value(pattern.pattern_type, pattern.pattern_value)
        if not result.ok:
            logger.warning(
                "pattern_value_unparseable",
                pattern_id=pattern.id,
                pattern_type=pattern.pattern_type,
                errors=list(result.errors),
            )
        return cls(
            id=pattern.id,
            category_id=pattern.category_id,
            pattern_type=PatternType(pattern.pattern_type),
            pattern_value=pattern.pattern_value,
            value=result.value,
            confidence_weight=pattern.confidence_weight,
            usage_count=pattern.usage_count,
            success_count=pattern.success_count,
            success_rate=pattern.success_rate,
            active=pattern.active,
            user_created=pattern.user_created,
        )


@dataclass(frozen=True)
class ConditionSet:
    """Parsed composite eligibility conditions."""

    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    days_of_week: frozenset[int] | None = None  # 0 = monday
    time_ranges: tuple[tuple[int, int], ...] | None = None  # minutes since midnight
    merchant_blacklist: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, conditions: dict | None) -> "ConditionSet | None":
        """Parse stored conditions; raises ValueError on malformed content."""
        if not conditions:
            return None
        try:
            min_amount = _decimal_or_none(conditions.get("min_amount"))
            max_amount = _decimal_or_none(conditions.get("max_amount"))
        except InvalidOperation as exc:
            raise ValueError("amount condition is not numeric") from exc

        days = None
        if conditions.get("days_of_week"):
            days = frozenset(DAY_NAMES.index(str(day).lower()) for day in conditions["days_of_week"])

        time_ranges = None
        if conditions.get("time_ranges"):
            parsed = []
            for time_range in conditions["time_ranges"]:
                start = parse_clock(str(time_range["start"]))
                end = parse_clock(str(time_range["end"]))
                if start is None or end is None:
                    raise ValueError(f"invalid time range {time_range!r}")
                parsed.append((start, end))
            time_ranges = tuple(parsed)

        blacklist = tuple(
            str(name).strip().lower()
            for name in conditions.get("merchant_blacklist") or ()
            if str(name).strip()
        )
        return cls(min_amount, max_amount, days, time_ranges, blacklist)


@dataclass(frozen=True)
class CompiledComposite:
    kind: ClassVar[RuleKind] = RuleKind.COMPOSITE

    id: int
    category_id: int
    name: str
    operator: CompositeOperator
    pattern_ids: tuple[int, ...]
    components: tuple[CompiledPattern, ...] = ()
    conditions: ConditionSet | None = None
    conditions_valid: bool = True
    confidence_weight: float = 1.5
    usage_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    active: bool = True
    user_created: bool = False

    @property
    def identity(self) -> tuple[str, int]:
        return (self.kind.value, self.id)

    @classmethod
    def from_model(
        cls,
        composite: CompositePattern,
        patterns_by_id: dict[int, CompiledPattern],
    ) -> "CompiledComposite":
        pattern_ids = tuple(int(pid) for pid in composite.pattern_ids or ())
        components = tuple(patterns_by_id[pid] for pid in pattern_ids if pid in patterns_by_id)

        conditions_valid = True
        try:
            conditions = ConditionSet.from_dict(composite.conditions)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("composite_conditions_unparseable", composite_id=composite.id, error=str(exc))
            conditions, conditions_valid = None, False

        return cls(
            id=composite.id,
            category_id=composite.category_id,
            name=composite.name,
            operator=CompositeOperator(composite.operator),
            pattern_ids=pattern_ids,
            components=components,
            conditions=conditions,
            conditions_valid=conditions_valid,
            confidence_weight=composite.confidence_weight,
            usage_count=composite.usage_count,
            success_count=composite.success_count,
            success_rate=composite.success_rate,
            active=composite.active,
            user_created=composite.user_created,
        )


@dataclass(frozen=True)
class RuleSnapshot:
    """Active rules plus preference weights, as loaded at one point in time."""

    patterns: tuple[CompiledPattern, ...] = ()
    composites: tuple[CompiledComposite, ...] = ()
    # (context_type, context_value) → ((category_id, preference_weight), ...)
    preferences: dict[tuple[str, str], tuple[tuple[int, int], ...]] = field(default_factory=dict)

    def rules(self) -> list[CompiledPattern | CompiledComposite]:
        return [*self.patterns, *self.composites]


def _decimal_or_none(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))
