"""Learning loop: usage counters, feedback processing and poor-performer deactivation.

Counter updates are single guarded UPDATE statements (increment-then-recompute in
SQL), so concurrent writers can't lose updates, and an update that would make
success_count exceed usage_count touches no row. The counter update, its
learning event, the deactivation check and the cache invalidation commit as one
unit: if any step fails the transaction rolls back and nothing is applied.
"""

from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import Float, cast, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from expense_categorizer.config import Settings, settings as default_settings
from expense_categorizer.core.enums import FeedbackType, PatternType, RuleKind
from expense_categorizer.core.exceptions import ConsistencyViolationError, NotFoundError
from expense_categorizer.models.categorization_pattern import CategorizationPattern
from expense_categorizer.models.category import Category
from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.models.pattern_feedback import PatternFeedback, PatternLearningEvent
from expense_categorizer.schemas.feedback import FeedbackCreate, FeedbackResult
from expense_categorizer.services.merchant_normalizer import normalize_merchant_name
from expense_categorizer.services.pattern_cache import PatternCache, commit_with_invalidation
from expense_categorizer.services.pattern_evaluator import text_field
from expense_categorizer.services.pattern_service import parse_schema
from expense_categorizer.services.pattern_values import validate_pattern_value
from expense_categorizer.services.preference_service import PreferenceService
from expense_categorizer.services.rule_locks import RuleLocks, default_rule_locks
from expense_categorizer.services.rule_snapshot import CompiledComposite, CompiledPattern

logger = structlog.get_logger()

RULE_MODELS = {
    RuleKind.PATTERN: CategorizationPattern,
    RuleKind.COMPOSITE: CompositePattern,
}

# Feedback kinds that confirm the final category and feed contextual preferences
CATEGORY_CONFIRMING_FEEDBACK = {FeedbackType.ACCEPTED, FeedbackType.CORRECTED, FeedbackType.CORRECTION}


@dataclass(frozen=True)
class UsageOutcome:
    kind: RuleKind
    rule_id: int
    usage_count: int
    success_count: int
    success_rate: float
    active: bool
    deactivated: bool = False


def rule_identity(rule: Any) -> tuple[RuleKind, int]:
    """(kind, id) for ORM rows, compiled rules or explicit (kind, id) tuples."""
    if isinstance(rule, tuple):
        return RuleKind(rule[0]), int(rule[1])
    if isinstance(rule, (CompositePattern, CompiledComposite)):
        return RuleKind.COMPOSITE, rule.id
    if isinstance(rule, (CategorizationPattern, CompiledPattern)):
        return RuleKind.PATTERN, rule.id
    raise TypeError(f"Not a pattern or composite pattern: {rule!r}")


class LearningFeedbackProcessor:
    def __init__(
        self,
        db: AsyncSession,
        cache: PatternCache | None = None,
        locks: RuleLocks | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.cache = cache
        self.locks = locks or default_rule_locks
        self.settings = settings or default_settings

    # ── Usage ──────────────────────────────────────────

    async def record_usage(
        self,
        rule: Any,
        was_successful: bool,
        *,
        expense_id: int | None = None,
        category_id: int | None = None,
        confidence_score: float | None = None,
        context_data: dict | None = None,
    ) -> UsageOutcome:
        """Count one match outcome for a pattern or composite and commit.

        Runs the poor-performance check in the same transaction, so a deactivated
        rule is gone from the very next classification.
        """
        kind, rule_id = rule_identity(rule)
        async with self.locks.hold(kind, rule_id):
            try:
                outcome = await self._apply_usage(
                    kind,
                    rule_id,
                    was_successful,
                    expense_id=expense_id,
                    category_id=category_id,
                    confidence_score=confidence_score,
                    context_data=context_data,
                )
            except Exception:
                await self.db.rollback()
                raise
            await commit_with_invalidation(
                self.db,
                self.cache,
                kind.value,
                rule_id,
                "deactivated" if outcome.deactivated else "usage_recorded",
            )

        if isinstance(rule, (CategorizationPattern, CompositePattern)):
            for key in ("usage_count", "success_count", "success_rate", "active"):
                set_committed_value(rule, key, getattr(outcome, key))
        return outcome

    async def _apply_usage(
        self,
        kind: RuleKind,
        rule_id: int,
        was_successful: bool,
        *,
        expense_id: int | None = None,
        category_id: int | None = None,
        confidence_score: float | None = None,
        context_data: dict | None = None,
    ) -> UsageOutcome:
        model = RULE_MODELS[kind]
        success = 1 if was_successful else 0

        result = await self.db.execute(
            update(model)
            .where(model.id == rule_id, model.success_count + success <= model.usage_count + 1)
            .values(
                usage_count=model.usage_count + 1,
                success_count=model.success_count + success,
                success_rate=cast(model.success_count + success, Float) / (model.usage_count + 1),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            exists = await self.db.scalar(select(model.id).where(model.id == rule_id))
            if exists is None:
                raise NotFoundError(model.__name__)
            logger.error(
                "counter_update_rejected",
                rule_kind=kind.value,
                rule_id=rule_id,
                was_successful=was_successful,
            )
            raise ConsistencyViolationError(kind.value, rule_id)

        if category_id is None:
            category_id = await self.db.scalar(select(model.category_id).where(model.id == rule_id))
        self.db.add(
            PatternLearningEvent(
                expense_id=expense_id,
                category_id=category_id,
                pattern_used=f"{kind.value}:{rule_id}",
                was_correct=was_successful,
                confidence_score=confidence_score,
                context_data=context_data or {},
            )
        )
        await self.db.flush()

        deactivated = await self._deactivate_if_poor(kind, rule_id)

        row = (
            await self.db.execute(
                select(model.usage_count, model.success_count, model.success_rate, model.active).where(
                    model.id == rule_id
                )
            )
        ).one()
        return UsageOutcome(
            kind=kind,
            rule_id=rule_id,
            usage_count=row.usage_count,
            success_count=row.success_count,
            success_rate=row.success_rate,
            active=row.active,
            deactivated=deactivated,
        )

    async def _deactivate_if_poor(self, kind: RuleKind, rule_id: int) -> bool:
        model = RULE_MODELS[kind]
        result = await self.db.execute(
            update(model)
            .where(model.id == rule_id, *self._poor_performance_criteria(model))
            .values(active=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning(
                "rule_auto_deactivated",
                rule_kind=kind.value,
                rule_id=rule_id,
                min_usage=self.settings.deactivation_min_usage,
                max_success_rate=self.settings.deactivation_max_success_rate,
            )
            return True
        return False

    def _poor_performance_criteria(self, model) -> list:
        return [
            model.active.is_(True),
            model.user_created.is_(False),
            model.usage_count >= self.settings.deactivation_min_usage,
            model.success_rate < self.settings.deactivation_max_success_rate,
        ]

    async def sweep_poor_performers(self) -> list[tuple[str, int]]:
        """Deactivate every poor performer at once (for scheduled maintenance)."""
        deactivated: list[tuple[str, int]] = []
        for kind, model in RULE_MODELS.items():
            result = await self.db.execute(
                select(model.id).where(*self._poor_performance_criteria(model)).order_by(model.id)
            )
            ids = list(result.scalars().all())
            if not ids:
                continue
            await self.db.execute(
                update(model)
                .where(model.id.in_(ids), *self._poor_performance_criteria(model))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            deactivated.extend((kind.value, rule_id) for rule_id in ids)

        if deactivated:
            await commit_with_invalidation(self.db, self.cache, "sweep", None, "poor_performance")
            logger.info("poor_performers_swept", deactivated=len(deactivated))
        return deactivated

    # ── Feedback ───────────────────────────────────────

    async def process_feedback(
        self, feedback: FeedbackCreate | dict, expense: Any = None
    ) -> FeedbackResult:
        """Store a feedback event and apply it to the learning state in one transaction.

        accepted / rejected / corrected / correction count a usage on the referenced
        rule (successful only when accepted); correction additionally synthesizes a
        user pattern from the expense; confirming kinds feed contextual preferences.
        """
        data = parse_schema(FeedbackCreate, feedback)
        kind, rule_id = None, None
        if data.pattern_id is not None:
            kind, rule_id = RuleKind.PATTERN, data.pattern_id
        elif data.composite_pattern_id is not None:
            kind, rule_id = RuleKind.COMPOSITE, data.composite_pattern_id

        lock = self.locks.hold(kind, rule_id) if kind is not None else nullcontext()
        async with lock:
            try:
                result = await self._apply_feedback(data, kind, rule_id, expense)
            except Exception:
                await self.db.rollback()
                raise
            await commit_with_invalidation(
                self.db,
                self.cache,
                kind.value if kind is not None else "feedback",
                rule_id,
                f"feedback_{data.feedback_type.value}",
            )

        logger.info(
            "feedback_processed",
            feedback_id=result.feedback_id,
            feedback_type=data.feedback_type.value,
            rule_kind=kind.value if kind is not None else None,
            rule_id=rule_id,
            created_pattern_id=result.created_pattern_id,
        )
        return result

    async def _apply_feedback(
        self,
        data: FeedbackCreate,
        kind: RuleKind | None,
        rule_id: int | None,
        expense: Any,
    ) -> FeedbackResult:
        if kind is not None:
            model = RULE_MODELS[kind]
            if await self.db.scalar(select(model.id).where(model.id == rule_id)) is None:
                raise NotFoundError(model.__name__)

        row = PatternFeedback(
            expense_id=data.expense_id,
            category_id=data.category_id,
            categorization_pattern_id=data.pattern_id,
            composite_pattern_id=data.composite_pattern_id,
            was_correct=data.was_correct,
            confidence_score=data.confidence_score,
            feedback_type=data.feedback_type.value,
            context_data=data.context_data,
        )
        self.db.add(row)
        await self.db.flush()
        result = FeedbackResult(feedback_id=row.id)

        if kind is not None:
            outcome = await self._apply_usage(
                kind,
                rule_id,
                data.feedback_type == FeedbackType.ACCEPTED,
                expense_id=data.expense_id,
                confidence_score=data.confidence_score,
                context_data={"feedback_id": row.id, "feedback_type": data.feedback_type.value},
            )
            result.usage_recorded = True
            result.rule_deactivated = outcome.deactivated

        if data.feedback_type == FeedbackType.CORRECTION:
            pattern = await self._synthesize_from_correction(row, data, expense)
            if pattern is not None:
                result.created_pattern_id = pattern.id

        if (
            data.feedback_type in CATEGORY_CONFIRMING_FEEDBACK
            and expense is not None
            and data.category_id is not None
            and await self.db.get(Category, data.category_id) is not None
        ):
            await PreferenceService(self.db, settings=self.settings).learn_from_categorization(
                expense, data.category_id
            )
        return result

    async def _synthesize_from_correction(
        self, feedback_row: PatternFeedback, data: FeedbackCreate, expense: Any
    ) -> CategorizationPattern | None:
        """Create a user pattern for the corrected category from the expense's merchant or description."""
        if expense is None or data.category_id is None:
            logger.info("correction_pattern_skipped", feedback_id=feedback_row.id, reason="no_expense_or_category")
            return None

        merchant = text_field(expense, "merchant_name")
        description = text_field(expense, "description")
        if merchant:
            pattern_type, raw_value = PatternType.MERCHANT, normalize_merchant_name(merchant) or merchant
        elif description:
            pattern_type, raw_value = PatternType.DESCRIPTION, description
        else:
            logger.info("correction_pattern_skipped", feedback_id=feedback_row.id, reason="no_pattern_value")
            return None

        parsed = validate_pattern_value(pattern_type, raw_value)
        if not parsed.ok:
            logger.warning(
                "correction_pattern_skipped",
                feedback_id=feedback_row.id,
                reason="invalid_value",
                errors=list(parsed.errors),
            )
            return None

        if await self.db.get(Category, data.category_id) is None:
            logger.warning("correction_pattern_skipped", feedback_id=feedback_row.id, reason="unknown_category")
            return None

        existing = await self.db.scalar(
            select(CategorizationPattern.id).where(
                CategorizationPattern.category_id == data.category_id,
                CategorizationPattern.pattern_type == pattern_type.value,
                CategorizationPattern.pattern_value == parsed.normalized,
            )
        )
        if existing is not None:
            logger.info("correction_pattern_exists", feedback_id=feedback_row.id, pattern_id=existing)
            return None

        pattern = CategorizationPattern(
            category_id=data.category_id,
            pattern_type=pattern_type.value,
            pattern_value=parsed.normalized,
            confidence_weight=self.settings.correction_pattern_weight,
            usage_count=0,
            success_count=0,
            success_rate=0.0,
            active=True,
            user_created=True,
            metadata_={
                "created_from_feedback": True,
                "feedback_id": feedback_row.id,
                "expense_id": data.expense_id,
            },
        )
        self.db.add(pattern)
        await self.db.flush()

        logger.info(
            "correction_pattern_created",
            pattern_id=pattern.id,
            category_id=pattern.category_id,
            pattern_type=pattern.pattern_type,
            pattern_value=pattern.pattern_value,
            feedback_id=feedback_row.id,
        )
        return pattern
