"""Effective confidence of patterns and composites.

Base rule:
    usage_count >= min_usage → weight * (0.5 + 0.5 * success_rate)
    otherwise                → weight * 0.7

Composite rule:
    adjusted = weight * (0.7 + 0.3 * mean(component effective confidence))
    usage_count >= min_usage → adjusted * (0.5 + 0.5 * success_rate)
    otherwise                → adjusted * 0.8
    no components            → 0.0
"""

from collections.abc import Sequence
from typing import Any

from expense_categorizer.config import Settings, settings as default_settings
from expense_categorizer.core.enums import RuleKind

LOW_EVIDENCE_PATTERN_FACTOR = 0.7
LOW_EVIDENCE_COMPOSITE_FACTOR = 0.8


class ConfidenceModel:
    def __init__(self, min_usage: int | None = None, settings: Settings | None = None):
        settings = settings or default_settings
        self.min_usage = settings.confidence_min_usage if min_usage is None else min_usage

    def _success_blend(self, rule: Any, base: float, low_evidence_factor: float) -> float:
        if rule.usage_count >= self.min_usage:
            return base * (0.5 + 0.5 * rule.success_rate)
        return base * low_evidence_factor

    def pattern_confidence(self, pattern: Any) -> float:
        return self._success_blend(pattern, pattern.confidence_weight, LOW_EVIDENCE_PATTERN_FACTOR)

    def composite_confidence(self, composite: Any, components: Sequence[Any] | None = None) -> float:
        if components is None:
            components = getattr(composite, "components", ())
        if not components:
            return 0.0
        mean_component = sum(self.pattern_confidence(p) for p in components) / len(components)
        adjusted = composite.confidence_weight * (0.7 + 0.3 * mean_component)
        return self._success_blend(composite, adjusted, LOW_EVIDENCE_COMPOSITE_FACTOR)

    def effective_confidence(self, rule: Any, components: Sequence[Any] | None = None) -> float:
        """Confidence for either rule kind; composites may pass resolved components explicitly."""
        if getattr(rule, "kind", None) == RuleKind.COMPOSITE or hasattr(rule, "operator"):
            return self.composite_confidence(rule, components)
        return self.pattern_confidence(rule)
