"""Feedback schemas."""

from pydantic import BaseModel, Field, model_validator

from expense_categorizer.core.enums import FeedbackType


class FeedbackCreate(BaseModel):
    expense_id: int | None = None
    category_id: int | None = None
    pattern_id: int | None = None
    composite_pattern_id: int | None = None
    feedback_type: FeedbackType
    was_correct: bool | None = None  # defaults to feedback_type == accepted
    confidence_score: float | None = Field(None, ge=0.0, le=1.0)
    context_data: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_single_rule(self) -> "FeedbackCreate":
        if self.pattern_id is not None and self.composite_pattern_id is not None:
            raise ValueError("feedback can reference a pattern or a composite pattern, not both")
        if self.was_correct is None:
            self.was_correct = self.feedback_type == FeedbackType.ACCEPTED
        return self


class FeedbackResult(BaseModel):
    feedback_id: int
    usage_recorded: bool = False
    rule_deactivated: bool = False
    created_pattern_id: int | None = None
