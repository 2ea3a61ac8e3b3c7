"""SQLAlchemy models."""

from expense_categorizer.models.base import Base
from expense_categorizer.models.canonical_merchant import CanonicalMerchant, MerchantAlias
from expense_categorizer.models.categorization_pattern import CategorizationPattern
from expense_categorizer.models.category import Category
from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.models.pattern_feedback import PatternFeedback, PatternLearningEvent
from expense_categorizer.models.user_category_preference import UserCategoryPreference

__all__ = [
    "Base",
    "Category",
    "CategorizationPattern",
    "CompositePattern",
    "CanonicalMerchant",
    "MerchantAlias",
    "PatternFeedback",
    "PatternLearningEvent",
    "UserCategoryPreference",
]
