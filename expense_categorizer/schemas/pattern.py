"""Categorization pattern schemas."""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field, ValidationInfo, field_validator, model_validator

from expense_categorizer.core.enums import PatternType
from expense_categorizer.services.pattern_values import (
    MAX_CONFIDENCE_WEIGHT,
    MIN_CONFIDENCE_WEIGHT,
    validate_pattern_value,
)


class PatternCreate(BaseModel):
    category_id: int
    pattern_type: PatternType
    pattern_value: str
    confidence_weight: float = Field(1.0, ge=MIN_CONFIDENCE_WEIGHT, le=MAX_CONFIDENCE_WEIGHT)
    user_created: bool = False
    metadata: dict = Field(default_factory=dict)

    @field_validator("pattern_value")
    @classmethod
    def normalize_value(cls, value: str, info: ValidationInfo) -> str:
        pattern_type = info.data.get("pattern_type")
        if pattern_type is None:
            return value
        result = validate_pattern_value(pattern_type, value)
        if not result.ok:
            raise ValueError("; ".join(result.errors))
        return result.normalized


class PatternUpdate(BaseModel):
    pattern_value: str | None = None
    confidence_weight: float | None = Field(None, ge=MIN_CONFIDENCE_WEIGHT, le=MAX_CONFIDENCE_WEIGHT)
    active: bool | None = None
    user_created: bool | None = None
    usage_count: int | None = Field(None, ge=0)
    success_count: int | None = Field(None, ge=0)
    metadata: dict | None = None

    @model_validator(mode="after")
    def check_counters(self) -> "PatternUpdate":
        if (
            self.usage_count is not None
            and self.success_count is not None
            and self.success_count > self.usage_count
        ):
            raise ValueError("success_count can't exceed usage_count")
        return self


class PatternResponse(BaseModel):
    id: int
    category_id: int
    pattern_type: PatternType
    pattern_value: str
    confidence_weight: float
    usage_count: int
    success_count: int
    success_rate: float
    active: bool
    user_created: bool
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
