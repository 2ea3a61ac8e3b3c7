"""Base pattern evaluation tests."""

from decimal import Decimal

import pytest

from expense_categorizer.core.enums import PatternType
from expense_categorizer.services.pattern_evaluator import coerce_amount, in_time_range, matches
from expense_categorizer.services.rule_snapshot import CompiledPattern
from tests.helpers import at, compiled_pattern, expense


class TestTextPatterns:
    def test_merchant_substring_is_case_insensitive(self):
        pattern = compiled_pattern("merchant", "starbucks")
        assert matches(pattern, expense(merchant_name="STARBUCKS #4521"))

    def test_merchant_ignores_description(self):
        pattern = compiled_pattern("merchant", "starbucks")
        assert not matches(pattern, expense(description="starbucks reload"))

    @pytest.mark.parametrize("merchant", [None, "", "   "])
    def test_blank_field_is_no_match(self, merchant):
        pattern = compiled_pattern("merchant", "starbucks")
        assert not matches(pattern, expense(merchant_name=merchant))

    def test_keyword_reads_description(self):
        pattern = compiled_pattern("keyword", "coffee")
        assert matches(pattern, expense(merchant_name="BLUE BOTTLE", description="Morning Coffee"))

    def test_description_falls_back_to_merchant(self):
        pattern = compiled_pattern("description", "blue bottle")
        assert matches(pattern, expense(merchant_name="BLUE BOTTLE COFFEE"))

    def test_description_present_takes_precedence(self):
        pattern = compiled_pattern("description", "blue bottle")
        assert not matches(pattern, expense(merchant_name="BLUE BOTTLE", description="card payment"))

    def test_accepts_plain_mappings(self):
        pattern = compiled_pattern("merchant", "lyft")
        assert matches(pattern, {"merchant_name": "LYFT *RIDE"})


class TestRegexPatterns:
    def test_matches_case_insensitively(self):
        pattern = compiled_pattern("regex", r"^amzn mktp")
        assert matches(pattern, expense(description="AMZN Mktp US*2K4"))

    def test_uses_merchant_without_description(self):
        pattern = compiled_pattern("regex", r"\bshell\b")
        assert matches(pattern, expense(merchant_name="SHELL OIL 5744"))

    def test_unparseable_stored_value_never_matches(self):
        pattern = CompiledPattern(
            id=1, category_id=1, pattern_type=PatternType.REGEX, pattern_value="(", value=None
        )
        assert not matches(pattern, expense(description="("))


class TestAmountRangePatterns:
    @pytest.mark.parametrize(
        "amount, expected",
        [("10", True), ("50", True), ("30.25", True), ("9.99", False), ("50.01", False)],
    )
    def test_inclusive_bounds(self, amount, expected):
        pattern = compiled_pattern("amount_range", "10-50")
        assert matches(pattern, expense(amount=amount)) is expected

    @pytest.mark.parametrize(
        "amount, expected",
        [("-100", True), ("-75", True), ("-50", True), ("-49.99", False), ("-100.01", False)],
    )
    def test_negative_bounds(self, amount, expected):
        pattern = compiled_pattern("amount_range", "-100--50")
        assert matches(pattern, expense(amount=amount)) is expected

    @pytest.mark.parametrize("amount", [None, "abc", "NaN", True, object()])
    def test_non_numeric_amount_is_no_match(self, amount):
        pattern = compiled_pattern("amount_range", "0-1000")
        assert not matches(pattern, {"amount": amount})

    def test_accepts_float_and_int_amounts(self):
        pattern = compiled_pattern("amount_range", "10-50")
        assert matches(pattern, {"amount": 12.5})
        assert matches(pattern, {"amount": 50})

    def test_coerce_amount(self):
        assert coerce_amount("12.30") == Decimal("12.30")
        assert coerce_amount("inf") is None


class TestTimePatterns:
    @pytest.mark.parametrize(
        "bucket, hour, expected",
        [
            ("morning", 6, True),
            ("morning", 11, True),
            ("morning", 12, False),
            ("afternoon", 12, True),
            ("afternoon", 16, True),
            ("afternoon", 17, False),
            ("evening", 17, True),
            ("evening", 20, True),
            ("evening", 21, False),
            ("night", 21, True),
            ("night", 0, True),
            ("night", 5, True),
            ("night", 6, False),
        ],
    )
    def test_day_part_buckets(self, bucket, hour, expected):
        pattern = compiled_pattern("time", bucket)
        assert matches(pattern, expense(at=at(hour, 30))) is expected

    def test_weekend_and_weekday(self):
        weekend = compiled_pattern("time", "weekend")
        weekday = compiled_pattern("time", "weekday")
        saturday, monday = at(12, day=1), at(12, day=3)
        assert matches(weekend, expense(at=saturday))
        assert not matches(weekend, expense(at=monday))
        assert matches(weekday, expense(at=monday))
        assert not matches(weekday, expense(at=saturday))

    @pytest.mark.parametrize(
        "hour, minute, expected",
        [(9, 0, True), (17, 0, True), (17, 1, False), (8, 59, False)],
    )
    def test_explicit_range_is_minute_granular(self, hour, minute, expected):
        pattern = compiled_pattern("time", "09:00-17:00")
        assert matches(pattern, expense(at=at(hour, minute))) is expected

    @pytest.mark.parametrize(
        "hour, minute, expected",
        [(23, 30, True), (1, 59, True), (2, 0, True), (2, 1, False), (12, 0, False)],
    )
    def test_range_wraps_midnight(self, hour, minute, expected):
        pattern = compiled_pattern("time", "22:00-02:00")
        assert matches(pattern, expense(at=at(hour, minute))) is expected

    def test_iso_string_timestamp(self):
        pattern = compiled_pattern("time", "morning")
        assert matches(pattern, {"transaction_timestamp": "2024-06-03T07:45:00"})

    @pytest.mark.parametrize("timestamp", [None, "not a date", 1717400000])
    def test_unparseable_timestamp_is_no_match(self, timestamp):
        pattern = compiled_pattern("time", "night")
        assert not matches(pattern, {"transaction_timestamp": timestamp})

    def test_in_time_range(self):
        assert in_time_range(0, 1380, 60)
        assert not in_time_range(120, 1380, 60)
