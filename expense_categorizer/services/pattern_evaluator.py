"""Base pattern evaluation.

`matches` is pure: it reads the expense, never mutates the pattern and never
raises. Malformed input (blank fields, non-numeric amounts, unparseable
timestamps) simply does not match.
"""

from collections.abc import Mapping
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from expense_categorizer.services.pattern_values import (
    AmountRangeValue,
    DescriptionValue,
    KeywordValue,
    MerchantValue,
    RegexValue,
    TimeBucket,
    TimeValue,
)
from expense_categorizer.services.rule_snapshot import CompiledPattern

logger = structlog.get_logger()


# ── Input access ────────────────────────────────────────────────


def read_field(expense: Any, name: str) -> Any:
    """Read a field from a mapping or an attribute-style expense."""
    if isinstance(expense, Mapping):
        return expense.get(name)
    return getattr(expense, name, None)


def text_field(expense: Any, name: str) -> str | None:
    value = read_field(expense, name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def coerce_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def coerce_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def minute_of_day(timestamp: datetime) -> int:
    return timestamp.hour * 60 + timestamp.minute


def in_time_range(minute: int, start: int, end: int) -> bool:
    """Inclusive minute range check; wraps midnight when end < start."""
    if start <= end:
        return start <= minute <= end
    return minute >= start or minute <= end


# ── Variant evaluation ──────────────────────────────────────────


def _contains(haystack: str | None, needle: str) -> bool:
    if not haystack or not needle:
        return False
    return needle in haystack.lower()


def _description_or_merchant(expense: Any) -> str | None:
    return text_field(expense, "description") or text_field(expense, "merchant_name")


def _matches_time(value: TimeValue, timestamp: datetime) -> bool:
    if value.bucket is None:
        if value.start_minute is None or value.end_minute is None:
            return False
        return in_time_range(minute_of_day(timestamp), value.start_minute, value.end_minute)

    hour = timestamp.hour
    if value.bucket == TimeBucket.MORNING:
        return 6 <= hour < 12
    if value.bucket == TimeBucket.AFTERNOON:
        return 12 <= hour < 17
    if value.bucket == TimeBucket.EVENING:
        return 17 <= hour < 21
    if value.bucket == TimeBucket.NIGHT:
        return hour >= 21 or hour < 6
    if value.bucket == TimeBucket.WEEKEND:
        return timestamp.weekday() >= 5
    return timestamp.weekday() < 5


def matches_value(value: Any, expense: Any) -> bool:
    """Evaluate one typed pattern value against an expense-like input."""
    if isinstance(value, MerchantValue):
        return _contains(text_field(expense, "merchant_name"), value.needle)

    if isinstance(value, (KeywordValue, DescriptionValue)):
        return _contains(_description_or_merchant(expense), value.needle)

    if isinstance(value, RegexValue):
        text = _description_or_merchant(expense)
        if not text:
            return False
        return value.compiled.search(text) is not None

    if isinstance(value, AmountRangeValue):
        amount = coerce_amount(read_field(expense, "amount"))
        if amount is None:
            return False
        return value.minimum <= amount <= value.maximum

    if isinstance(value, TimeValue):
        timestamp = coerce_timestamp(read_field(expense, "transaction_timestamp"))
        if timestamp is None:
            return False
        return _matches_time(value, timestamp)

    return False


def matches(pattern: CompiledPattern, expense: Any) -> bool:
    """True when the pattern matches the expense; any failure is treated as no match."""
    if pattern.value is None:
        return False
    try:
        return matches_value(pattern.value, expense)
    except Exception as exc:
        logger.warning(
            "pattern_evaluation_degraded",
            pattern_id=pattern.id,
            pattern_type=pattern.pattern_type.value,
            error=str(exc),
        )
        return False
