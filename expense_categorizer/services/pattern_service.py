"""Pattern administration service.

Create, update and deactivate base patterns and composite patterns. These are
the write paths that invalidate the pattern cache: every mutation commits and
consumes its invalidation token before returning.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expense_categorizer.core.enums import RuleKind
from expense_categorizer.core.exceptions import NotFoundError, ValidationError
from expense_categorizer.models.categorization_pattern import CategorizationPattern
from expense_categorizer.models.category import Category
from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.schemas.composite_pattern import CompositePatternCreate, CompositePatternUpdate
from expense_categorizer.schemas.pattern import PatternCreate, PatternUpdate
from expense_categorizer.services import composite_evaluator
from expense_categorizer.services.pattern_cache import PatternCache, commit_with_invalidation
from expense_categorizer.services.pattern_values import validate_pattern_value
from expense_categorizer.services.rule_locks import RuleLocks, default_rule_locks
from expense_categorizer.services.rule_snapshot import CompiledComposite, CompiledPattern

logger = structlog.get_logger()


def parse_schema(schema: type[BaseModel], data: Any) -> Any:
    """Validate input against a schema, converting failures to field-level ValidationError."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


class PatternService:
    def __init__(
        self,
        db: AsyncSession,
        cache: PatternCache | None = None,
        locks: RuleLocks | None = None,
    ):
        self.db = db
        self.cache = cache
        self.locks = locks or default_rule_locks

    # ── Patterns ───────────────────────────────────────

    async def get_pattern(self, pattern_id: int) -> CategorizationPattern:
        pattern = await self.db.get(CategorizationPattern, pattern_id)
        if not pattern:
            raise NotFoundError("CategorizationPattern")
        return pattern

    async def list_patterns(
        self, category_id: int | None = None, active_only: bool = False
    ) -> list[CategorizationPattern]:
        query = select(CategorizationPattern).order_by(CategorizationPattern.id)
        if category_id is not None:
            query = query.where(CategorizationPattern.category_id == category_id)
        if active_only:
            query = query.where(CategorizationPattern.active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_pattern(self, data: PatternCreate | dict) -> CategorizationPattern:
        """Create a base pattern; the value is normalized and validated for its type."""
        data = parse_schema(PatternCreate, data)
        async with self._rollback_on_error():
            await self._require_category(data.category_id)
            await self._ensure_unique_pattern(
                data.category_id, data.pattern_type.value, data.pattern_value
            )

            pattern = CategorizationPattern(
                category_id=data.category_id,
                pattern_type=data.pattern_type.value,
                pattern_value=data.pattern_value,
                confidence_weight=data.confidence_weight,
                usage_count=0,
                success_count=0,
                success_rate=0.0,
                active=True,
                user_created=data.user_created,
                metadata_=data.metadata,
            )
            self.db.add(pattern)
            await self._flush_or_duplicate("pattern_value")
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.PATTERN.value, pattern.id, "created"
            )

        logger.info(
            "pattern_created",
            pattern_id=pattern.id,
            category_id=pattern.category_id,
            pattern_type=pattern.pattern_type,
            pattern_value=pattern.pattern_value,
            user_created=pattern.user_created,
        )
        return pattern

    async def update_pattern(self, pattern_id: int, data: PatternUpdate | dict) -> CategorizationPattern:
        data = parse_schema(PatternUpdate, data)
        async with self.locks.hold(RuleKind.PATTERN, pattern_id), self._rollback_on_error():
            pattern = await self._lock_row(CategorizationPattern, pattern_id)
            update_data = data.model_dump(exclude_unset=True)

            if "pattern_value" in update_data:
                result = validate_pattern_value(pattern.pattern_type, update_data["pattern_value"] or "")
                if not result.ok:
                    raise ValidationError(
                        f"pattern_value: {'; '.join(result.errors)}",
                        {"pattern_value": list(result.errors)},
                    )
                update_data["pattern_value"] = result.normalized
                await self._ensure_unique_pattern(
                    pattern.category_id, pattern.pattern_type, result.normalized, exclude_id=pattern.id
                )

            self._apply_counter_update(pattern, update_data)
            if "metadata" in update_data:
                pattern.metadata_ = update_data.pop("metadata") or {}
            for key, value in update_data.items():
                setattr(pattern, key, value)

            await self._flush_or_duplicate("pattern_value")
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.PATTERN.value, pattern.id, "updated"
            )

        logger.info("pattern_updated", pattern_id=pattern.id, fields=sorted(data.model_fields_set))
        return pattern

    async def deactivate_pattern(self, pattern_id: int) -> CategorizationPattern:
        async with self.locks.hold(RuleKind.PATTERN, pattern_id), self._rollback_on_error():
            pattern = await self._lock_row(CategorizationPattern, pattern_id)
            pattern.active = False
            await self.db.flush()
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.PATTERN.value, pattern.id, "deactivated"
            )

        logger.info("pattern_deactivated", pattern_id=pattern.id, reason="manual")
        return pattern

    # ── Composite patterns ─────────────────────────────

    async def get_composite(self, composite_id: int) -> CompositePattern:
        composite = await self.db.get(CompositePattern, composite_id)
        if not composite:
            raise NotFoundError("CompositePattern")
        return composite

    async def list_composites(
        self, category_id: int | None = None, active_only: bool = False
    ) -> list[CompositePattern]:
        query = select(CompositePattern).order_by(CompositePattern.id)
        if category_id is not None:
            query = query.where(CompositePattern.category_id == category_id)
        if active_only:
            query = query.where(CompositePattern.active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_composite(self, data: CompositePatternCreate | dict) -> CompositePattern:
        data = parse_schema(CompositePatternCreate, data)
        async with self._rollback_on_error():
            await self._require_category(data.category_id)
            await self._check_component_ids(data.category_id, data.pattern_ids)
            await self._ensure_unique_composite_name(data.category_id, data.name)

            composite = CompositePattern(
                category_id=data.category_id,
                name=data.name.strip(),
                operator=data.operator.value,
                pattern_ids=list(data.pattern_ids),
                conditions=data.conditions.to_storage() if data.conditions else {},
                confidence_weight=data.confidence_weight,
                usage_count=0,
                success_count=0,
                success_rate=0.0,
                active=True,
                user_created=data.user_created,
            )
            self.db.add(composite)
            await self._flush_or_duplicate("name")
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.COMPOSITE.value, composite.id, "created"
            )

        logger.info(
            "composite_pattern_created",
            composite_id=composite.id,
            category_id=composite.category_id,
            operator=composite.operator,
            pattern_ids=composite.pattern_ids,
        )
        return composite

    async def update_composite(
        self, composite_id: int, data: CompositePatternUpdate | dict
    ) -> CompositePattern:
        data = parse_schema(CompositePatternUpdate, data)
        async with self.locks.hold(RuleKind.COMPOSITE, composite_id), self._rollback_on_error():
            composite = await self._lock_row(CompositePattern, composite_id)
            update_data = data.model_dump(exclude_unset=True)

            if "pattern_ids" in update_data:
                if update_data["pattern_ids"] is None:
                    raise ValidationError.for_field("pattern_ids", "must contain at least one pattern")
                await self._check_component_ids(composite.category_id, update_data["pattern_ids"])
            if "name" in update_data:
                if update_data["name"] is None:
                    raise ValidationError.for_field("name", "can't be blank")
                update_data["name"] = update_data["name"].strip()
                await self._ensure_unique_composite_name(
                    composite.category_id, update_data["name"], exclude_id=composite.id
                )
            if "operator" in update_data:
                if data.operator is None:
                    raise ValidationError.for_field("operator", "can't be blank")
                update_data["operator"] = data.operator.value
            if "conditions" in update_data:
                update_data["conditions"] = data.conditions.to_storage() if data.conditions else {}

            self._apply_counter_update(composite, update_data)
            for key, value in update_data.items():
                setattr(composite, key, value)

            await self._flush_or_duplicate("name")
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.COMPOSITE.value, composite.id, "updated"
            )

        logger.info("composite_pattern_updated", composite_id=composite.id, fields=sorted(data.model_fields_set))
        return composite

    async def deactivate_composite(self, composite_id: int) -> CompositePattern:
        async with self.locks.hold(RuleKind.COMPOSITE, composite_id), self._rollback_on_error():
            composite = await self._lock_row(CompositePattern, composite_id)
            composite.active = False
            await self.db.flush()
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.COMPOSITE.value, composite.id, "deactivated"
            )

        logger.info("composite_pattern_deactivated", composite_id=composite.id, reason="manual")
        return composite

    async def add_pattern_to_composite(self, composite_id: int, pattern_id: int) -> CompositePattern:
        async with self.locks.hold(RuleKind.COMPOSITE, composite_id), self._rollback_on_error():
            composite = await self._lock_row(CompositePattern, composite_id)
            current = [int(pid) for pid in composite.pattern_ids or ()]
            if pattern_id in current:
                await self.db.commit()
                return composite
            await self._check_component_ids(composite.category_id, [pattern_id])

            composite.pattern_ids = [*current, pattern_id]
            await self.db.flush()
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.COMPOSITE.value, composite.id, "pattern_added"
            )

        logger.info("composite_pattern_added", composite_id=composite.id, pattern_id=pattern_id)
        return composite

    async def remove_pattern_from_composite(self, composite_id: int, pattern_id: int) -> CompositePattern:
        async with self.locks.hold(RuleKind.COMPOSITE, composite_id), self._rollback_on_error():
            composite = await self._lock_row(CompositePattern, composite_id)
            current = [int(pid) for pid in composite.pattern_ids or ()]
            if pattern_id not in current:
                await self.db.commit()
                return composite
            remaining = [pid for pid in current if pid != pattern_id]
            if not remaining:
                raise ValidationError.for_field("pattern_ids", "must contain at least one pattern")

            composite.pattern_ids = remaining
            await self.db.flush()
            await commit_with_invalidation(
                self.db, self.cache, RuleKind.COMPOSITE.value, composite.id, "pattern_removed"
            )

        logger.info("composite_pattern_removed", composite_id=composite.id, pattern_id=pattern_id)
        return composite

    async def describe_composite(self, composite_id: int) -> str:
        composite = await self.get_composite(composite_id)
        ids = [int(pid) for pid in composite.pattern_ids or ()]
        result = await self.db.execute(
            select(CategorizationPattern).where(CategorizationPattern.id.in_(ids))
        )
        patterns = {p.id: CompiledPattern.from_model(p) for p in result.scalars().all()}
        return composite_evaluator.describe(CompiledComposite.from_model(composite, patterns))

    # ── Helpers ─────────────────────────────────────────

    async def _require_category(self, category_id: int) -> None:
        if await self.db.get(Category, category_id) is None:
            raise ValidationError.for_field("category_id", "category does not exist")

    async def _ensure_unique_pattern(
        self, category_id: int, pattern_type: str, pattern_value: str, exclude_id: int | None = None
    ) -> None:
        query = select(CategorizationPattern.id).where(
            CategorizationPattern.category_id == category_id,
            CategorizationPattern.pattern_type == pattern_type,
            CategorizationPattern.pattern_value == pattern_value,
        )
        if exclude_id is not None:
            query = query.where(CategorizationPattern.id != exclude_id)
        result = await self.db.execute(query.limit(1))
        if result.scalar_one_or_none() is not None:
            raise ValidationError.for_field(
                "pattern_value", "already exists for this category and pattern type"
            )

    async def _ensure_unique_composite_name(
        self, category_id: int, name: str, exclude_id: int | None = None
    ) -> None:
        query = select(CompositePattern.id).where(
            CompositePattern.category_id == category_id,
            CompositePattern.name == name.strip(),
        )
        if exclude_id is not None:
            query = query.where(CompositePattern.id != exclude_id)
        result = await self.db.execute(query.limit(1))
        if result.scalar_one_or_none() is not None:
            raise ValidationError.for_field("name", "has already been taken for this category")

    async def _check_component_ids(self, category_id: int, pattern_ids: list[int]) -> None:
        result = await self.db.execute(
            select(CategorizationPattern.id, CategorizationPattern.category_id).where(
                CategorizationPattern.id.in_(pattern_ids)
            )
        )
        found = {row.id: row.category_id for row in result.all()}

        messages = []
        missing = [pid for pid in pattern_ids if pid not in found]
        if missing:
            messages.append(f"patterns not found: {', '.join(str(pid) for pid in missing)}")
        foreign = [pid for pid in pattern_ids if pid in found and found[pid] != category_id]
        if foreign:
            messages.append(
                f"patterns belong to a different category: {', '.join(str(pid) for pid in foreign)}"
            )
        if messages:
            raise ValidationError(f"pattern_ids: {'; '.join(messages)}", {"pattern_ids": messages})

    @staticmethod
    def _apply_counter_update(rule: CategorizationPattern | CompositePattern, update_data: dict) -> None:
        """Validate manual counter edits and recompute success_rate."""
        if "usage_count" not in update_data and "success_count" not in update_data:
            return
        usage = update_data.get("usage_count")
        success = update_data.get("success_count")
        usage = rule.usage_count if usage is None else usage
        success = rule.success_count if success is None else success
        if success > usage:
            raise ValidationError.for_field("success_count", "can't exceed usage_count")
        update_data["usage_count"] = usage
        update_data["success_count"] = success
        update_data["success_rate"] = success / usage if usage else 0.0

    async def _lock_row(self, model: type, rule_id: int):
        result = await self.db.execute(
            select(model)
            .where(model.id == rule_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(model.__name__)
        return row

    async def _flush_or_duplicate(self, field: str) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise ValidationError.for_field(field, "already exists") from exc

    @asynccontextmanager
    async def _rollback_on_error(self) -> AsyncIterator[None]:
        """Roll back the write transaction, releasing row locks, when the body raises."""
        try:
            yield
        except Exception:
            await self.db.rollback()
            raise
