"""Classification result schemas."""

from pydantic import BaseModel

from expense_categorizer.core.enums import RuleKind


class ClassificationSuggestion(BaseModel):
    category_id: int
    confidence: float
    matched_rule_id: int
    matched_rule_kind: RuleKind
    base_confidence: float
    preference_boost: float = 0.0
    usage_count: int = 0
