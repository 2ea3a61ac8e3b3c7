"""Merchant normalization and similarity tests."""

import pytest

from expense_categorizer.services.merchant_normalizer import (
    beautify_merchant_name,
    canonical_key,
    character_overlap_similarity,
    normalize_merchant_name,
    similarity,
    trigram_similarity,
    trigrams,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("UBER *TRIP 1234", "uber trip"),
        ("UBER TECHNOLOGIES INC", "uber technologies"),
        ("Uber", "uber"),
        ("PAYPAL *SPOTIFY 4029357733", "spotify"),
        ("SQ *BLUE BOTTLE COFFEE", "blue bottle coffee"),
        ("TST* Joe's Pizza", "joe's pizza"),
        ("POS WALMART SUPERCENTER", "walmart supercenter"),
        ("STARBUCKS #4521", "starbucks"),
        ("STARBUCKS#4521", "starbucks"),
        ("STARBUCKS STORE #1234", "starbucks"),
        ("TARGET LOCATION 0042 MINNEAPOLIS", "target minneapolis"),
        ("ACME WIDGETS LLC.", "acme widgets"),
        ("  Trader   Joe's!!  ", "trader joe's"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize(raw, expected):
    assert normalize_merchant_name(raw) == expected


def test_uber_variants_share_a_canonical_key():
    keys = {
        canonical_key(normalize_merchant_name(raw))
        for raw in ("UBER *TRIP 1234", "UBER TECHNOLOGIES INC", "Uber")
    }
    assert keys == {"uber"}


def test_canonical_key_keeps_unknown_merchants():
    assert canonical_key("blue bottle coffee") == "blue bottle coffee"


@pytest.mark.parametrize(
    "normalized, expected",
    [
        ("walmart supercenter", "walmart"),
        ("netflix com", "netflix"),
        ("amazon mktp us", "amazon"),
        ("mc donalds", "mcdonalds"),
        ("target range club", "target range club"),
        ("uber eats", "uber eats"),
        ("lyft line driver lounge", "lyft line driver lounge"),
    ],
)
def test_only_descriptor_suffixes_fold_onto_a_brand(normalized, expected):
    assert canonical_key(normalized) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("uber", "Uber"),
        ("mcdonalds", "McDonald's"),
        ("mcdonald's", "McDonald's"),
        ("blue bottle coffee", "Blue Bottle Coffee"),
        ("uber trip", "Uber Trip"),
    ],
)
def test_beautify(name, expected):
    assert beautify_merchant_name(name) == expected


class TestSimilarity:
    def test_trigrams_are_padded_per_word(self):
        assert trigrams("ab") == {"  a", " ab", "ab "}

    def test_identical_names(self):
        assert similarity("starbucks", "starbucks") == 1.0

    def test_trigram_overlap(self):
        assert trigram_similarity("uber trip", "uber") == pytest.approx(0.5)

    def test_symmetric(self):
        assert similarity("blue bottle", "blue bottle coffee") == similarity(
            "blue bottle coffee", "blue bottle"
        )

    def test_disjoint_names(self):
        assert similarity("netflix", "uber") == 0.0

    def test_falls_back_without_trigrams(self):
        assert trigram_similarity("&&", "&-") is None
        assert similarity("&&", "&-") == pytest.approx(0.5)

    def test_character_overlap_strategy(self):
        assert character_overlap_similarity("abc", "abd") == pytest.approx(2 / 3)
        assert similarity("abc", "abd", strategy="character_overlap") == pytest.approx(2 / 3)

    @pytest.mark.parametrize("a, b", [("", "uber"), ("uber", ""), ("", "")])
    def test_empty_strings(self, a, b):
        assert similarity(a, b) == 0.0
