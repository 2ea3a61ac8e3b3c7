"""Closed vocabularies shared by models, schemas and services."""

from enum import Enum


class PatternType(str, Enum):
    MERCHANT = "merchant"
    KEYWORD = "keyword"
    DESCRIPTION = "description"
    AMOUNT_RANGE = "amount_range"
    REGEX = "regex"
    TIME = "time"


class CompositeOperator(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class FeedbackType(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CORRECTED = "corrected"
    CORRECTION = "correction"


class RuleKind(str, Enum):
    PATTERN = "pattern"
    COMPOSITE = "composite"


class ContextType(str, Enum):
    MERCHANT = "merchant"
    TIME_OF_DAY = "time_of_day"
    DAY_OF_WEEK = "day_of_week"
    AMOUNT_RANGE = "amount_range"
