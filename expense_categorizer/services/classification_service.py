"""Classification orchestrator.

Ranks category suggestions for an expense from the cached rule snapshot:

    1. evaluate every active pattern and composite against the expense
    2. score each match with the confidence model
    3. add a bounded boost from contextual preferences of the matched category
    4. sort by confidence desc, usage_count desc, then (rule kind, rule id) asc

Classification never raises: a broken rule is skipped and a failing rule store
yields an empty list.
"""

from collections import defaultdict
from collections.abc import Iterable
from typing import Any

import structlog

from expense_categorizer.config import Settings, settings as default_settings
from expense_categorizer.core.enums import RuleKind
from expense_categorizer.schemas.classification import ClassificationSuggestion
from expense_categorizer.services import composite_evaluator, pattern_evaluator
from expense_categorizer.services.confidence import ConfidenceModel
from expense_categorizer.services.pattern_cache import PatternCache
from expense_categorizer.services.preference_service import preference_contexts
from expense_categorizer.services.rule_snapshot import RuleSnapshot

logger = structlog.get_logger()


class ClassificationOrchestrator:
    def __init__(
        self,
        cache: PatternCache,
        confidence_model: ConfidenceModel | None = None,
        settings: Settings | None = None,
        use_preferences: bool = True,
    ):
        self.cache = cache
        self.settings = settings or default_settings
        self.confidence_model = confidence_model or ConfidenceModel(settings=self.settings)
        self.use_preferences = use_preferences

    async def classify(self, expense: Any) -> list[ClassificationSuggestion]:
        snapshot = await self._snapshot()
        if snapshot is None:
            return []
        return self.rank(snapshot, expense)

    async def classify_many(self, expenses: Iterable[Any]) -> list[list[ClassificationSuggestion]]:
        """Classify several expenses against one rule snapshot."""
        expenses = list(expenses)
        snapshot = await self._snapshot()
        if snapshot is None:
            return [[] for _ in expenses]
        return [self.rank(snapshot, expense) for expense in expenses]

    async def _snapshot(self) -> RuleSnapshot | None:
        try:
            return await self.cache.get_snapshot()
        except Exception:
            logger.exception("classification_rules_unavailable")
            return None

    # ── Ranking ────────────────────────────────────────

    def rank(self, snapshot: RuleSnapshot, expense: Any) -> list[ClassificationSuggestion]:
        boosts = self.preference_boosts(snapshot, expense) if self.use_preferences else {}

        suggestions = []
        for rule in snapshot.rules():
            try:
                if rule.kind == RuleKind.COMPOSITE:
                    matched = composite_evaluator.matches(rule, expense)
                else:
                    matched = pattern_evaluator.matches(rule, expense)
                if not matched:
                    continue
                base = self.confidence_model.effective_confidence(rule)
            except Exception as exc:
                logger.warning(
                    "rule_skipped_during_classification",
                    rule_kind=rule.kind.value,
                    rule_id=rule.id,
                    error=str(exc),
                )
                continue

            boost = boosts.get(rule.category_id, 0.0)
            confidence = base + boost
            if confidence < self.settings.classification_min_confidence:
                continue
            suggestions.append(
                ClassificationSuggestion(
                    category_id=rule.category_id,
                    confidence=confidence,
                    matched_rule_id=rule.id,
                    matched_rule_kind=rule.kind,
                    base_confidence=base,
                    preference_boost=boost,
                    usage_count=rule.usage_count,
                )
            )

        suggestions.sort(
            key=lambda s: (-s.confidence, -s.usage_count, s.matched_rule_kind.value, s.matched_rule_id)
        )
        return suggestions

    def preference_boosts(self, snapshot: RuleSnapshot, expense: Any) -> dict[int, float]:
        """category_id → boost in [0, preference_boost_cap], saturating with summed weights."""
        totals: dict[int, float] = defaultdict(float)
        for context_type, context_value in preference_contexts(expense):
            for category_id, weight in snapshot.preferences.get((context_type.value, context_value), ()):
                totals[category_id] += weight

        cap = self.settings.preference_boost_cap
        saturation = self.settings.preference_weight_saturation
        return {
            category_id: cap * min(1.0, total / saturation)
            for category_id, total in totals.items()
        }
