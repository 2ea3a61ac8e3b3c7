"""Contextual category preferences.

Every confirmed categorization bumps co-occurrence counters for the expense's
merchant, time of day, day of week and amount bucket. The orchestrator turns
matching counters into a small bounded confidence boost.
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_categorizer.config import Settings, settings as default_settings
from expense_categorizer.core.enums import ContextType
from expense_categorizer.models.user_category_preference import UserCategoryPreference
from expense_categorizer.services.pattern_cache import PatternCache, commit_with_invalidation
from expense_categorizer.services.pattern_evaluator import (
    coerce_amount,
    coerce_timestamp,
    read_field,
    text_field,
)
from expense_categorizer.services.rule_snapshot import DAY_NAMES

logger = structlog.get_logger()

# upper bound (exclusive) → bucket name; amounts are compared by magnitude
AMOUNT_BUCKETS = [(25, "small"), (100, "medium"), (500, "large")]
LARGEST_AMOUNT_BUCKET = "very_large"


def time_of_day_bucket(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def amount_bucket(amount) -> str:
    magnitude = abs(amount)
    for upper, name in AMOUNT_BUCKETS:
        if magnitude < upper:
            return name
    return LARGEST_AMOUNT_BUCKET


def preference_contexts(expense: Any) -> list[tuple[ContextType, str]]:
    """Context keys an expense falls into; fields that are missing are skipped."""
    contexts = []
    merchant = text_field(expense, "merchant_name")
    if merchant:
        contexts.append((ContextType.MERCHANT, merchant.lower()))

    timestamp = coerce_timestamp(read_field(expense, "transaction_timestamp"))
    if timestamp is not None:
        contexts.append((ContextType.TIME_OF_DAY, time_of_day_bucket(timestamp.hour)))
        contexts.append((ContextType.DAY_OF_WEEK, DAY_NAMES[timestamp.weekday()]))

    amount = coerce_amount(read_field(expense, "amount"))
    if amount is not None:
        contexts.append((ContextType.AMOUNT_RANGE, amount_bucket(amount)))
    return contexts


class PreferenceService:
    def __init__(
        self,
        db: AsyncSession,
        cache: PatternCache | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.cache = cache
        self.settings = settings or default_settings

    async def learn_from_categorization(
        self, expense: Any, category_id: int
    ) -> list[UserCategoryPreference]:
        """Bump the counters for every context of the expense (flush only, caller commits)."""
        rows = []
        for context_type, context_value in preference_contexts(expense):
            result = await self.db.execute(
                select(UserCategoryPreference).where(
                    UserCategoryPreference.context_type == context_type.value,
                    UserCategoryPreference.context_value == context_value,
                    UserCategoryPreference.category_id == category_id,
                )
            )
            preference = result.scalar_one_or_none()
            if preference is None:
                preference = UserCategoryPreference(
                    category_id=category_id,
                    context_type=context_type.value,
                    context_value=context_value,
                    preference_weight=1,
                    usage_count=1,
                )
                self.db.add(preference)
            else:
                if preference.usage_count > self.settings.preference_weight_threshold:
                    preference.preference_weight += 1
                preference.usage_count += 1
            rows.append(preference)

        await self.db.flush()
        return rows

    async def record_categorization(
        self, expense: Any, category_id: int
    ) -> list[UserCategoryPreference]:
        """Learn from a categorization and commit, refreshing cached preference weights."""
        rows = await self.learn_from_categorization(expense, category_id)
        await commit_with_invalidation(self.db, self.cache, "preference", category_id, "learned")
        logger.info("preferences_learned", category_id=category_id, contexts=len(rows))
        return rows

    async def preferences_for(self, expense: Any) -> list[UserCategoryPreference]:
        """Stored preferences matching any context of the expense, strongest first."""
        rows = []
        for context_type, context_value in preference_contexts(expense):
            result = await self.db.execute(
                select(UserCategoryPreference).where(
                    UserCategoryPreference.context_type == context_type.value,
                    UserCategoryPreference.context_value == context_value,
                )
            )
            rows.extend(result.scalars().all())
        return sorted(rows, key=lambda p: (-p.preference_weight, -p.usage_count, p.id))
