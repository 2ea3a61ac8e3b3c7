"""Confidence model tests."""

import pytest

from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.services.confidence import ConfidenceModel
from tests.helpers import compiled_composite, compiled_pattern


@pytest.fixture
def model(test_settings):
    return ConfidenceModel(settings=test_settings)


def pattern(weight=1.0, usage=0, success=0, pattern_id=1):
    return compiled_pattern(
        "merchant",
        "starbucks",
        pattern_id=pattern_id,
        confidence_weight=weight,
        usage_count=usage,
        success_count=success,
        success_rate=success / usage if usage else 0.0,
    )


class TestPatternConfidence:
    def test_proven_pattern_blends_success_rate(self, model):
        assert model.effective_confidence(pattern(usage=10, success=9)) == pytest.approx(0.95)

    def test_low_evidence_pattern_is_penalized(self, model):
        assert model.effective_confidence(pattern(weight=2.0, usage=4, success=4)) == pytest.approx(1.4)

    def test_threshold_is_inclusive(self, model):
        assert model.effective_confidence(pattern(usage=5, success=0)) == pytest.approx(0.5)

    @pytest.mark.parametrize("usage", [3, 10, 40])
    def test_monotonic_in_success_rate(self, model, usage):
        scores = [
            model.effective_confidence(pattern(usage=usage, success=success))
            for success in range(usage + 1)
        ]
        assert scores == sorted(scores)

    def test_min_usage_is_configurable(self):
        assert ConfidenceModel(min_usage=1).effective_confidence(
            pattern(usage=2, success=2)
        ) == pytest.approx(1.0)


class TestCompositeConfidence:
    def test_blends_component_confidence(self, model):
        components = [pattern(pattern_id=1), pattern(usage=10, success=10, pattern_id=2)]
        composite = compiled_composite("OR", components, confidence_weight=1.5)
        # components: 0.7 and 1.0 → mean 0.85; 1.5 * (0.7 + 0.255) * 0.8
        assert model.effective_confidence(composite) == pytest.approx(1.146)

    def test_proven_composite_uses_its_own_success_rate(self, model):
        components = [pattern(pattern_id=1), pattern(usage=10, success=10, pattern_id=2)]
        composite = compiled_composite(
            "OR",
            components,
            confidence_weight=1.5,
            usage_count=10,
            success_count=5,
            success_rate=0.5,
        )
        assert model.effective_confidence(composite) == pytest.approx(1.4325 * 0.75)

    def test_no_components_is_zero(self, model):
        composite = compiled_composite("AND", [], usage_count=50, success_count=50, success_rate=1.0)
        assert model.effective_confidence(composite) == 0.0

    def test_orm_composite_with_explicit_components(self, model):
        row = CompositePattern(
            name="rides",
            operator="OR",
            pattern_ids=[1],
            confidence_weight=1.0,
            usage_count=0,
            success_count=0,
            success_rate=0.0,
        )
        only = pattern(usage=10, success=10)
        assert model.effective_confidence(row, components=[only]) == pytest.approx(1.0 * 1.0 * 0.8)
        assert model.effective_confidence(row) == 0.0
