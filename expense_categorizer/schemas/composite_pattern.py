"""Composite pattern schemas."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from expense_categorizer.core.enums import CompositeOperator
from expense_categorizer.services.pattern_values import (
    MAX_CONFIDENCE_WEIGHT,
    MIN_CONFIDENCE_WEIGHT,
    parse_clock,
)
from expense_categorizer.services.rule_snapshot import DAY_NAMES


class TimeRangeCondition(BaseModel):
    start: str
    end: str

    model_config = {"extra": "forbid"}

    @field_validator("start", "end")
    @classmethod
    def check_clock(cls, value: str) -> str:
        if parse_clock(value) is None:
            raise ValueError("must be a valid time in HH:MM format")
        return value.strip()


class CompositeConditions(BaseModel):
    """Eligibility conditions; unknown keys are rejected."""

    min_amount: Decimal | None = Field(None, gt=0)
    max_amount: Decimal | None = Field(None, gt=0)
    days_of_week: list[str] | None = None
    time_ranges: list[TimeRangeCondition] | None = None
    merchant_blacklist: list[str] | None = None

    model_config = {"extra": "forbid"}

    @field_validator("max_amount")
    @classmethod
    def check_amount_order(cls, value: Decimal | None, info: ValidationInfo) -> Decimal | None:
        minimum = info.data.get("min_amount")
        if value is not None and minimum is not None and minimum >= value:
            raise ValueError("max_amount must be greater than min_amount")
        return value

    @field_validator("days_of_week")
    @classmethod
    def check_days(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        days = []
        for day in value:
            name = day.strip().lower()
            if name not in DAY_NAMES:
                raise ValueError(f"invalid day name '{day}'")
            if name not in days:
                days.append(name)
        return days

    @field_validator("merchant_blacklist")
    @classmethod
    def clean_blacklist(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [name.strip() for name in value if name.strip()]

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class CompositePatternCreate(BaseModel):
    category_id: int
    name: str = Field(min_length=1, max_length=100)
    operator: CompositeOperator
    pattern_ids: list[int] = Field(min_length=1)
    conditions: CompositeConditions | None = None
    confidence_weight: float = Field(1.5, ge=MIN_CONFIDENCE_WEIGHT, le=MAX_CONFIDENCE_WEIGHT)
    user_created: bool = False

    @field_validator("operator", mode="before")
    @classmethod
    def upper_operator(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("pattern_ids")
    @classmethod
    def dedupe_ids(cls, value: list[int]) -> list[int]:
        return list(dict.fromkeys(value))


class CompositePatternUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    operator: CompositeOperator | None = None
    pattern_ids: list[int] | None = Field(None, min_length=1)
    conditions: CompositeConditions | None = None
    confidence_weight: float | None = Field(None, ge=MIN_CONFIDENCE_WEIGHT, le=MAX_CONFIDENCE_WEIGHT)
    active: bool | None = None
    user_created: bool | None = None
    usage_count: int | None = Field(None, ge=0)
    success_count: int | None = Field(None, ge=0)

    @field_validator("operator", mode="before")
    @classmethod
    def upper_operator(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("pattern_ids")
    @classmethod
    def dedupe_ids(cls, value: list[int] | None) -> list[int] | None:
        return list(dict.fromkeys(value)) if value is not None else None


class CompositePatternResponse(BaseModel):
    id: int
    category_id: int
    name: str
    operator: CompositeOperator
    pattern_ids: list[int]
    conditions: dict
    confidence_weight: float
    usage_count: int
    success_count: int
    success_rate: float
    active: bool
    user_created: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
