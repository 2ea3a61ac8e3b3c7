"""Typed pattern values.

Each pattern_type maps to exactly one frozen value variant carrying its validated
payload:

    merchant / keyword / description  → lowercase needle for substring containment
    amount_range                      → two Decimal bounds, min < max
    regex                             → pre-compiled case-insensitive pattern
    time                              → symbolic bucket or minute-granularity range

Validation never raises: `validate_pattern_value` (authoring) and
`compile_pattern_value` (loading stored rows) both return a `ParseResult`
carrying either the value or the list of field-level error messages.

Examples:
    validate_pattern_value(PatternType.MERCHANT, "  Star   Bucks ")
    → normalized="star bucks", value=MerchantValue(needle="star bucks")

    validate_pattern_value(PatternType.AMOUNT_RANGE, "-100--50")
    → normalized="-100.00--50.00", value=AmountRangeValue(-100.00, -50.00)
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum

from expense_categorizer.core.enums import PatternType


class TimeBucket(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"
    WEEKEND = "weekend"
    WEEKDAY = "weekday"


# ── Limits ──────────────────────────────────────────────────────

MIN_TEXT_LENGTH = 2
MAX_TEXT_LENGTH = 255
MAX_REGEX_LENGTH = 100
MIN_CONFIDENCE_WEIGHT = 0.1
MAX_CONFIDENCE_WEIGHT = 5.0

GENERIC_WORDS = frozenset({"the", "a", "an", "of", "in", "on", "at", "to", "for", "and", "or"})

TEXT_PATTERN_TYPES = frozenset({PatternType.MERCHANT, PatternType.KEYWORD, PatternType.DESCRIPTION})

# ── Regex patterns ──────────────────────────────────────────────

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")

# "min-max" with signed bounds: "10-50", "-100--50", "-20.5-20"
_AMOUNT_RANGE_RE = re.compile(r"^-?\d+(?:\.\d{1,2})?--?\d+(?:\.\d{1,2})?$")
_AMOUNT_SPLIT_RE = re.compile(r"(?<=\d)-(?=-?\d)")

_TIME_RANGE_RE = re.compile(r"^(\d{1,2}):(\d{2})-(\d{1,2}):(\d{2})$")

# Shapes prone to catastrophic backtracking
_DANGEROUS_REGEX_SHAPES = [
    re.compile(r"\([^)]*[+*]\)[+*]"),  # (a+)+
    re.compile(r"\[[^\]]*[+*]\][+*]"),  # [a+]+
    re.compile(r"(\w+[+*])+[+*]"),  # a++
    re.compile(r"\(.+[+*].+\)[+*]"),  # ((a+)b)+
    re.compile(r"\(\?<[=!]"),  # lookbehind
    re.compile(r"\{\d*,?\d*\}\{"),  # a{1,5}{2}
]


# ── Value variants ──────────────────────────────────────────────


@dataclass(frozen=True)
class MerchantValue:
    needle: str


@dataclass(frozen=True)
class KeywordValue:
    needle: str


@dataclass(frozen=True)
class DescriptionValue:
    needle: str


@dataclass(frozen=True)
class AmountRangeValue:
    minimum: Decimal
    maximum: Decimal


@dataclass(frozen=True)
class RegexValue:
    source: str
    compiled: re.Pattern = field(compare=False)


@dataclass(frozen=True)
class TimeValue:
    bucket: TimeBucket | None = None
    start_minute: int | None = None
    end_minute: int | None = None


PatternValue = (
    MerchantValue | KeywordValue | DescriptionValue | AmountRangeValue | RegexValue | TimeValue
)

_TEXT_VARIANTS = {
    PatternType.MERCHANT: MerchantValue,
    PatternType.KEYWORD: KeywordValue,
    PatternType.DESCRIPTION: DescriptionValue,
}


@dataclass(frozen=True)
class ParseResult:
    """Either a parsed value (with its normalized text) or error messages."""

    value: PatternValue | None = None
    normalized: str | None = None
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors and self.value is not None

    @classmethod
    def failure(cls, *errors: str) -> "ParseResult":
        return cls(errors=tuple(errors))


# ── Normalization ───────────────────────────────────────────────


def normalize_pattern_value(pattern_type: PatternType, raw: str) -> str:
    """Canonical stored form of a pattern value, applied before validation."""
    pattern_type = PatternType(pattern_type)
    value = raw.strip()
    if pattern_type in TEXT_PATTERN_TYPES:
        return _WHITESPACE_RE.sub(" ", value).lower()
    if pattern_type == PatternType.TIME:
        return value.lower()
    if pattern_type == PatternType.AMOUNT_RANGE:
        bounds = _parse_amount_bounds(value)
        if bounds is None:
            return value
        return f"{bounds[0]:.2f}-{bounds[1]:.2f}"
    return value


# ── Parsing ─────────────────────────────────────────────────────


def compile_pattern_value(pattern_type: PatternType | str, value: str | None) -> ParseResult:
    """Parse a stored pattern value into its typed variant.

    Only the grammar is checked here; authoring-time policy (stop words,
    length limits, dangerous regex shapes) lives in `validate_pattern_value`.
    """
    try:
        pattern_type = PatternType(pattern_type)
    except ValueError:
        return ParseResult.failure(f"unknown pattern type '{pattern_type}'")
    if value is None or not value.strip():
        return ParseResult.failure("can't be blank")

    if pattern_type in TEXT_PATTERN_TYPES:
        needle = _WHITESPACE_RE.sub(" ", value.strip()).lower()
        return ParseResult(value=_TEXT_VARIANTS[pattern_type](needle), normalized=needle)

    if pattern_type == PatternType.AMOUNT_RANGE:
        return _compile_amount_range(value.strip())

    if pattern_type == PatternType.REGEX:
        try:
            compiled = re.compile(value.strip(), re.IGNORECASE)
        except re.error as exc:
            return ParseResult.failure(f"invalid regular expression: {exc}")
        return ParseResult(value=RegexValue(value.strip(), compiled), normalized=value.strip())

    return _compile_time(value.strip().lower())


def validate_pattern_value(pattern_type: PatternType | str, raw: str | None) -> ParseResult:
    """Normalize and fully validate a pattern value at authoring time."""
    try:
        pattern_type = PatternType(pattern_type)
    except ValueError:
        return ParseResult.failure(f"unknown pattern type '{pattern_type}'")
    if raw is None or not raw.strip():
        return ParseResult.failure("can't be blank")

    normalized = normalize_pattern_value(pattern_type, raw)
    errors: list[str] = []

    if _CONTROL_CHARS_RE.search(normalized):
        errors.append("contains control characters")

    if pattern_type in TEXT_PATTERN_TYPES:
        if len(normalized) < MIN_TEXT_LENGTH:
            errors.append(f"is too short (minimum is {MIN_TEXT_LENGTH} characters)")
        if len(normalized) > MAX_TEXT_LENGTH:
            errors.append(f"is too long (maximum is {MAX_TEXT_LENGTH} characters)")
        if normalized in GENERIC_WORDS:
            errors.append("is too generic to identify expenses")
    elif pattern_type == PatternType.REGEX:
        if len(normalized) > MAX_REGEX_LENGTH:
            errors.append(f"is too long (maximum is {MAX_REGEX_LENGTH} characters)")
        if any(shape.search(normalized) for shape in _DANGEROUS_REGEX_SHAPES):
            errors.append("contains potentially dangerous regex patterns")

    if errors:
        return ParseResult.failure(*errors)

    result = compile_pattern_value(pattern_type, normalized)
    if not result.ok:
        return result
    return ParseResult(value=result.value, normalized=normalized)


def _parse_amount_bounds(value: str) -> tuple[Decimal, Decimal] | None:
    if not _AMOUNT_RANGE_RE.match(value):
        return None
    parts = _AMOUNT_SPLIT_RE.split(value, maxsplit=1)
    if len(parts) != 2:
        return None
    try:
        return Decimal(parts[0]), Decimal(parts[1])
    except InvalidOperation:
        return None


def _compile_amount_range(value: str) -> ParseResult:
    bounds = _parse_amount_bounds(value)
    if bounds is None:
        return ParseResult.failure("must be in format 'min-max' (e.g., '10.00-50.00' or '-100--50')")
    minimum, maximum = bounds
    if minimum >= maximum:
        return ParseResult.failure("minimum must be less than maximum")
    normalized = f"{minimum:.2f}-{maximum:.2f}"
    return ParseResult(value=AmountRangeValue(minimum, maximum), normalized=normalized)


def parse_clock(value: str) -> int | None:
    """'HH:MM' → minutes since midnight, or None when out of range."""
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", value.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def _compile_time(value: str) -> ParseResult:
    try:
        return ParseResult(value=TimeValue(bucket=TimeBucket(value)), normalized=value)
    except ValueError:
        pass

    if not _TIME_RANGE_RE.match(value):
        return ParseResult.failure(
            "must be a time bucket (morning, afternoon, evening, night, weekend, weekday) "
            "or a range in format 'HH:MM-HH:MM'"
        )
    start_text, end_text = value.split("-", 1)
    start, end = parse_clock(start_text), parse_clock(end_text)
    if start is None or end is None:
        return ParseResult.failure("contains an invalid time (hours 0-23, minutes 0-59)")
    return ParseResult(value=TimeValue(start_minute=start, end_minute=end), normalized=value)
