"""Classification ranking and end-to-end matching."""

import pytest

from expense_categorizer.config import Settings
from expense_categorizer.core.enums import RuleKind
from expense_categorizer.services import composite_evaluator
from expense_categorizer.services.classification_service import ClassificationOrchestrator
from expense_categorizer.services.pattern_cache import PatternCache
from expense_categorizer.services.pattern_service import PatternService
from expense_categorizer.services.rule_snapshot import RuleSnapshot
from tests.helpers import add_pattern, at, compiled_composite, compiled_pattern, expense


class BrokenStore:
    async def load(self):
        raise ConnectionError("database unavailable")


@pytest.fixture
def orchestrator(test_settings):
    return ClassificationOrchestrator(PatternCache(BrokenStore()), settings=test_settings)


class TestRank:
    def test_sorted_by_confidence(self, orchestrator):
        snapshot = RuleSnapshot(
            patterns=(
                compiled_pattern("keyword", "coffee", pattern_id=1, category_id=1),
                compiled_pattern("merchant", "starbucks", pattern_id=2, category_id=1, confidence_weight=1.5),
                compiled_pattern("merchant", "lyft", pattern_id=3, category_id=2),
            )
        )

        suggestions = orchestrator.rank(snapshot, expense("Starbucks", "coffee and bagel"))

        assert [s.matched_rule_id for s in suggestions] == [2, 1]
        assert [s.confidence for s in suggestions] == [pytest.approx(1.05), pytest.approx(0.7)]
        assert all(s.matched_rule_kind == RuleKind.PATTERN for s in suggestions)

    def test_ties_break_on_usage_then_identity(self, orchestrator):
        snapshot = RuleSnapshot(
            patterns=(
                compiled_pattern("merchant", "uber", pattern_id=9, category_id=2),
                compiled_pattern("keyword", "ride", pattern_id=4, category_id=2),
                compiled_pattern("merchant", "ub", pattern_id=5, usage_count=10, success_count=5, success_rate=0.5),
                compiled_pattern("keyword", "rid", pattern_id=6, usage_count=20, success_count=10, success_rate=0.5),
            )
        )

        suggestions = orchestrator.rank(snapshot, expense("UBER TRIP", "Ride home"))

        assert [s.matched_rule_id for s in suggestions] == [6, 5, 4, 9]

    def test_broken_rule_is_skipped(self, orchestrator, monkeypatch):
        uber = compiled_pattern("merchant", "uber", pattern_id=1)
        snapshot = RuleSnapshot(patterns=(uber,), composites=(compiled_composite("OR", [uber], composite_id=1),))

        def explode(composite, expense):
            raise RuntimeError("bad composite")

        monkeypatch.setattr(composite_evaluator, "matches", explode)
        suggestions = orchestrator.rank(snapshot, expense("Uber"))

        assert [(s.matched_rule_kind, s.matched_rule_id) for s in suggestions] == [(RuleKind.PATTERN, 1)]

    def test_preference_boost_is_bounded_and_category_specific(self, orchestrator):
        snapshot = RuleSnapshot(
            patterns=(compiled_pattern("merchant", "starbucks", pattern_id=1, category_id=1),),
            preferences={
                ("merchant", "starbucks"): ((1, 8),),
                ("time_of_day", "morning"): ((1, 6), (2, 3)),
            },
        )
        morning_coffee = expense("Starbucks", amount=4, at=at(8))

        boosts = orchestrator.preference_boosts(snapshot, morning_coffee)
        assert boosts == {1: pytest.approx(0.15), 2: pytest.approx(0.045)}

        [suggestion] = orchestrator.rank(snapshot, morning_coffee)
        assert suggestion.category_id == 1
        assert suggestion.base_confidence == pytest.approx(0.7)
        assert suggestion.preference_boost == pytest.approx(0.15)
        assert suggestion.confidence == pytest.approx(0.85)

    def test_partial_boost_and_disabled_preferences(self, test_settings):
        snapshot = RuleSnapshot(
            patterns=(compiled_pattern("merchant", "starbucks", pattern_id=1, category_id=1),),
            preferences={("merchant", "starbucks"): ((1, 4),)},
        )
        cache = PatternCache(BrokenStore())

        [boosted] = ClassificationOrchestrator(cache, settings=test_settings).rank(snapshot, expense("Starbucks"))
        [plain] = ClassificationOrchestrator(cache, settings=test_settings, use_preferences=False).rank(
            snapshot, expense("Starbucks")
        )

        assert boosted.preference_boost == pytest.approx(0.06)
        assert plain.preference_boost == 0.0
        assert plain.confidence == pytest.approx(0.7)

    def test_minimum_confidence_filter(self):
        snapshot = RuleSnapshot(
            patterns=(
                compiled_pattern("merchant", "starbucks", pattern_id=1),
                compiled_pattern("keyword", "latte", pattern_id=2, confidence_weight=2.0),
            )
        )
        orchestrator = ClassificationOrchestrator(
            PatternCache(BrokenStore()), settings=Settings(_env_file=None, classification_min_confidence=1.0)
        )

        suggestions = orchestrator.rank(snapshot, expense("Starbucks", "Latte"))
        assert [s.matched_rule_id for s in suggestions] == [2]


class TestClassify:
    @pytest.mark.asyncio
    async def test_failing_store_yields_nothing(self, orchestrator):
        assert await orchestrator.classify(expense("Starbucks")) == []
        assert await orchestrator.classify_many([expense("a"), expense("b")]) == [[], []]

    @pytest.mark.asyncio
    async def test_no_rules(self, cache, test_settings):
        assert await ClassificationOrchestrator(cache, settings=test_settings).classify(expense("Starbucks")) == []

    @pytest.mark.asyncio
    async def test_established_merchant_pattern(self, db, cache, test_settings, categories):
        pattern = await add_pattern(
            db, categories["Coffee"].id, "merchant", "starbucks", usage_count=10, success_count=9
        )

        [suggestion] = await ClassificationOrchestrator(cache, settings=test_settings).classify(
            expense("STARBUCKS #4521")
        )

        assert suggestion.matched_rule_id == pattern.id
        assert suggestion.category_id == categories["Coffee"].id
        assert suggestion.confidence == pytest.approx(0.95)
        assert suggestion.usage_count == 10

    @pytest.mark.asyncio
    async def test_composite_time_window(self, db, cache, locks, test_settings, categories):
        service = PatternService(db, cache, locks)
        transport = categories["Transport"].id
        uber = await service.create_pattern(
            {"category_id": transport, "pattern_type": "merchant", "pattern_value": "uber"}
        )
        lyft = await service.create_pattern(
            {"category_id": transport, "pattern_type": "merchant", "pattern_value": "lyft"}
        )
        composite = await service.create_composite(
            {
                "category_id": transport,
                "name": "daytime rides",
                "operator": "OR",
                "pattern_ids": [uber.id, lyft.id],
                "conditions": {"time_ranges": [{"start": "06:00", "end": "23:00"}]},
            }
        )
        orchestrator = ClassificationOrchestrator(cache, settings=test_settings)

        night, day = await orchestrator.classify_many(
            [expense("UBER *TRIP", amount=18, at=at(2)), expense("UBER *TRIP", amount=18, at=at(10))]
        )

        assert [(s.matched_rule_kind, s.matched_rule_id) for s in night] == [(RuleKind.PATTERN, uber.id)]
        assert (RuleKind.COMPOSITE, composite.id) in [(s.matched_rule_kind, s.matched_rule_id) for s in day]
        composite_suggestion = next(s for s in day if s.matched_rule_kind == RuleKind.COMPOSITE)
        # 1.5 * (0.7 + 0.3 * 0.7) * 0.8
        assert composite_suggestion.base_confidence == pytest.approx(1.092)
        assert day[0] == composite_suggestion
