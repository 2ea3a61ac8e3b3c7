"""Merchant canonicalization service.

Resolves raw merchant strings to one canonical merchant identity, creating
aliases as new variants are seen. Resolution order:

    1. alias with the exact raw string
    2. alias with the same normalized string
    3. canonical merchant similar enough to the normalized string (new alias)
    4. new canonical merchant with a confidence-1.0 alias

Fuzzy lookups run in PostgreSQL through pg_trgm `similarity()` when the extension
is installed; other databases score candidates in Python with the same
trigram measure.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import Float, Select, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from expense_categorizer.config import Settings, settings as default_settings
from expense_categorizer.core.exceptions import NotFoundError, ValidationError
from expense_categorizer.models.base import utcnow
from expense_categorizer.models.canonical_merchant import CanonicalMerchant, MerchantAlias
from expense_categorizer.models.category import Category
from expense_categorizer.services.merchant_normalizer import (
    beautify_merchant_name,
    canonical_key,
    normalize_merchant_name,
    similarity,
)

logger = structlog.get_logger()


def similar_canonical_query(normalized: str, threshold: float) -> Select:
    """Best canonical merchant by pg_trgm similarity, at or above the threshold."""
    score = func.similarity(CanonicalMerchant.name, normalized, type_=Float)
    return (
        select(CanonicalMerchant, score.label("score"))
        .where(score >= threshold)
        .order_by(score.desc(), CanonicalMerchant.id)
        .limit(1)
    )


def similar_alias_query(normalized: str, threshold: float) -> Select:
    """Best alias by pg_trgm similarity of its normalized name, at or above the threshold."""
    score = func.similarity(MerchantAlias.normalized_name, normalized, type_=Float)
    return (
        select(MerchantAlias, score.label("score"))
        .where(score >= threshold)
        .order_by(score.desc(), MerchantAlias.id)
        .limit(1)
    )


class MerchantCanonicalizer:
    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or default_settings
        self._pg_trgm: bool | None = None

    def similarity(self, a: str, b: str) -> float:
        return similarity(a, b, self.settings.similarity_strategy)

    # ── Resolution ─────────────────────────────────────

    async def find_or_create_from_raw(self, raw_name: str | None) -> CanonicalMerchant | None:
        """Resolve a raw merchant string, recording the sighting. Blank names resolve to None."""
        raw = (raw_name or "").strip()
        normalized = normalize_merchant_name(raw)
        if not normalized:
            return None

        alias = await self._alias_by_raw(raw) or await self._alias_by_normalized(normalized)
        if alias:
            self.record_alias_match(alias)
            canonical = await self.db.get(CanonicalMerchant, alias.canonical_merchant_id)
            canonical.usage_count += 1
            await self.db.flush()
            return canonical

        canonical, score = await self._best_canonical(normalized)
        if canonical is not None:
            await self.record_alias(raw, canonical, confidence=score, normalized=normalized)
            canonical.usage_count += 1
            await self.db.flush()
            logger.info(
                "merchant_alias_created",
                raw_name=raw,
                canonical_merchant_id=canonical.id,
                confidence=round(score, 3),
            )
            return canonical

        name = canonical_key(normalized)
        canonical = CanonicalMerchant(
            name=name,
            display_name=beautify_merchant_name(name),
            usage_count=1,
            metadata_={},
        )
        self.db.add(canonical)
        await self.db.flush()
        await self.record_alias(raw, canonical, confidence=1.0, normalized=normalized)
        logger.info("canonical_merchant_created", canonical_merchant_id=canonical.id, name=name)
        return canonical

    async def record_alias(
        self,
        raw_name: str,
        canonical: CanonicalMerchant,
        confidence: float = 1.0,
        normalized: str | None = None,
    ) -> MerchantAlias:
        alias = MerchantAlias(
            raw_name=raw_name,
            normalized_name=normalized or normalize_merchant_name(raw_name),
            canonical_merchant_id=canonical.id,
            confidence=max(0.0, min(confidence, 1.0)),
            match_count=1,
            last_seen_at=utcnow(),
        )
        self.db.add(alias)
        await self.db.flush()
        return alias

    def record_alias_match(self, alias: MerchantAlias) -> None:
        """Count a sighting; confidence grows 5% per match past the growth threshold, capped."""
        alias.match_count += 1
        alias.last_seen_at = utcnow()
        ceiling = self.settings.alias_confidence_ceiling
        if alias.match_count > self.settings.alias_confidence_growth_after and alias.confidence < ceiling:
            alias.confidence = min(alias.confidence * 1.05, ceiling)

    async def find_alias(self, raw_name: str) -> MerchantAlias | None:
        """Exact raw, then normalized, then best fuzzy alias above the alias threshold."""
        raw = (raw_name or "").strip()
        normalized = normalize_merchant_name(raw)
        if not normalized:
            return None
        alias = await self._alias_by_raw(raw) or await self._alias_by_normalized(normalized)
        if alias:
            return alias

        threshold = self.settings.merchant_alias_match_threshold
        if await self._trigram_in_database():
            row = (await self.db.execute(similar_alias_query(normalized, threshold))).first()
            return row[0] if row is not None else None

        result = await self.db.execute(select(MerchantAlias).order_by(MerchantAlias.id))
        best, best_score = None, 0.0
        for candidate in result.scalars().all():
            score = self.similarity(normalized, candidate.normalized_name)
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score >= threshold:
            return best
        return None

    async def suggest_category(self, canonical: CanonicalMerchant) -> Category | None:
        """Category whose name matches the merchant's category hint."""
        if not canonical.category_hint:
            return None
        result = await self.db.execute(
            select(Category)
            .where(func.lower(Category.name) == canonical.category_hint.strip().lower())
            .order_by(Category.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ── Merging ────────────────────────────────────────

    async def merge_merchants(self, target_id: int, source_id: int) -> CanonicalMerchant:
        """Fold source into target: aliases move, usage sums, metadata unions, source is deleted."""
        if target_id == source_id:
            raise ValidationError.for_field("source_id", "can't merge a merchant into itself")
        target = await self._get_canonical(target_id)
        source = await self._get_canonical(source_id)

        await self.db.execute(
            update(MerchantAlias)
            .where(MerchantAlias.canonical_merchant_id == source.id)
            .values(canonical_merchant_id=target.id)
        )
        target.usage_count += source.usage_count
        target.metadata_ = {**(source.metadata_ or {}), **(target.metadata_ or {})}
        if not target.display_name:
            target.display_name = source.display_name
        if not target.category_hint:
            target.category_hint = source.category_hint

        await self.db.delete(source)
        await self.db.flush()
        await self.db.refresh(target)

        logger.info("canonical_merchants_merged", target_id=target.id, source_id=source_id)
        return target

    async def merge_aliases(self, keep_id: int, other_id: int) -> MerchantAlias:
        """Merge two aliases of the same canonical merchant."""
        if keep_id == other_id:
            raise ValidationError.for_field("other_id", "can't merge an alias into itself")
        keep = await self._get_alias(keep_id)
        other = await self._get_alias(other_id)
        if keep.canonical_merchant_id != other.canonical_merchant_id:
            raise ValidationError.for_field(
                "other_id", "aliases must belong to the same canonical merchant"
            )

        keep.match_count += other.match_count
        keep.confidence = max(keep.confidence, other.confidence)
        keep.last_seen_at = _latest(keep.last_seen_at, other.last_seen_at)

        await self.db.delete(other)
        await self.db.flush()

        logger.info("merchant_aliases_merged", keep_id=keep.id, other_id=other_id)
        return keep

    # ── Helpers ─────────────────────────────────────────

    async def _best_canonical(self, normalized: str) -> tuple[CanonicalMerchant | None, float]:
        key = canonical_key(normalized)
        result = await self.db.execute(
            select(CanonicalMerchant).where(CanonicalMerchant.name == key)
        )
        exact = result.scalar_one_or_none()
        if exact is not None:
            return exact, self.similarity(normalized, exact.name)

        threshold = self.settings.merchant_canonical_match_threshold
        if await self._trigram_in_database():
            row = (await self.db.execute(similar_canonical_query(normalized, threshold))).first()
            return (row[0], row.score) if row is not None else (None, 0.0)

        result = await self.db.execute(select(CanonicalMerchant).order_by(CanonicalMerchant.id))
        best, best_score = None, 0.0
        for candidate in result.scalars().all():
            score = self.similarity(normalized, candidate.name)
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score >= threshold:
            return best, best_score
        return None, 0.0

    async def _trigram_in_database(self) -> bool:
        """Whether fuzzy lookups can run in the database through pg_trgm."""
        if self.settings.similarity_strategy != "trigram":
            return False
        if self.db.get_bind().dialect.name != "postgresql":
            return False
        if self._pg_trgm is None:
            installed = await self.db.scalar(
                text("SELECT 1 FROM pg_extension WHERE extname = 'pg_trgm'")
            )
            self._pg_trgm = installed is not None
            if not self._pg_trgm:
                logger.warning("pg_trgm_unavailable", fallback="python_similarity")
        return self._pg_trgm

    async def _alias_by_raw(self, raw: str) -> MerchantAlias | None:
        result = await self.db.execute(
            select(MerchantAlias).where(MerchantAlias.raw_name == raw).order_by(MerchantAlias.id).limit(1)
        )
        return result.scalar_one_or_none()

    async def _alias_by_normalized(self, normalized: str) -> MerchantAlias | None:
        result = await self.db.execute(
            select(MerchantAlias)
            .where(MerchantAlias.normalized_name == normalized)
            .order_by(MerchantAlias.confidence.desc(), MerchantAlias.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_canonical(self, canonical_id: int) -> CanonicalMerchant:
        canonical = await self.db.get(CanonicalMerchant, canonical_id)
        if not canonical:
            raise NotFoundError("CanonicalMerchant")
        return canonical

    async def _get_alias(self, alias_id: int) -> MerchantAlias:
        alias = await self.db.get(MerchantAlias, alias_id)
        if not alias:
            raise NotFoundError("MerchantAlias")
        return alias


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b

    def aware(value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    return a if aware(a) >= aware(b) else b
