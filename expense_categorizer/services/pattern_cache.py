"""Invalidate-on-write cache of active rules.

Writers follow a token protocol:

    token = cache.issue("pattern", pattern_id, "updated")   # before commit
    await db.commit()
    cache.consume(token)                                     # after commit

While any token is pending, reads bypass the cache and load straight from the
store. `consume` bumps the generation and drops the snapshot; a rebuild that
started under an older generation is returned to its caller but never stored.
If a token can't be consumed the cache stays in bypass mode, so a failed
invalidation costs performance, never correctness.
"""

import itertools
import threading
from dataclasses import dataclass
from typing import Protocol

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expense_categorizer.core.exceptions import CacheInvalidationError
from expense_categorizer.models.categorization_pattern import CategorizationPattern
from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.models.user_category_preference import UserCategoryPreference
from expense_categorizer.services.rule_snapshot import CompiledComposite, CompiledPattern, RuleSnapshot

logger = structlog.get_logger()


@dataclass(frozen=True)
class InvalidationToken:
    id: int
    kind: str  # pattern, composite, preference
    rule_id: int | None
    reason: str


class RuleStore(Protocol):
    async def load(self) -> RuleSnapshot: ...


class SqlRuleStore:
    """Loads active rules and preference weights from the database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load(self) -> RuleSnapshot:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CompositePattern)
                .where(CompositePattern.active.is_(True))
                .order_by(CompositePattern.id)
            )
            composites = list(result.scalars().all())

            referenced_ids = {int(pid) for c in composites for pid in (c.pattern_ids or ())}
            pattern_filter = CategorizationPattern.active.is_(True)
            if referenced_ids:
                pattern_filter = or_(pattern_filter, CategorizationPattern.id.in_(referenced_ids))
            result = await session.execute(
                select(CategorizationPattern).where(pattern_filter).order_by(CategorizationPattern.id)
            )
            patterns = list(result.scalars().all())

            result = await session.execute(select(UserCategoryPreference))
            preference_rows = list(result.scalars().all())

        compiled = {p.id: CompiledPattern.from_model(p) for p in patterns}
        preferences: dict[tuple[str, str], list[tuple[int, int]]] = {}
        for row in preference_rows:
            preferences.setdefault((row.context_type, row.context_value), []).append(
                (row.category_id, row.preference_weight)
            )

        return RuleSnapshot(
            patterns=tuple(p for p in compiled.values() if p.active),
            composites=tuple(CompiledComposite.from_model(c, compiled) for c in composites),
            preferences={key: tuple(sorted(value)) for key, value in preferences.items()},
        )


class PatternCache:
    def __init__(self, store: RuleStore):
        self._store = store
        self._lock = threading.Lock()
        self._snapshot: RuleSnapshot | None = None
        self._generation = 0
        self._pending: dict[int, InvalidationToken] = {}
        self._token_ids = itertools.count(1)
        self._stats = {"hits": 0, "misses": 0, "rebuilds": 0, "invalidations": 0}

    @property
    def generation(self) -> int:
        return self._generation

    async def get_snapshot(self) -> RuleSnapshot:
        """Current rules; rebuilds from the store on a miss or while writes are pending."""
        with self._lock:
            if self._snapshot is not None and not self._pending:
                self._stats["hits"] += 1
                return self._snapshot
            self._stats["misses"] += 1
            generation = self._generation

        snapshot = await self._store.load()

        with self._lock:
            if generation == self._generation and not self._pending:
                self._snapshot = snapshot
                self._stats["rebuilds"] += 1
                logger.debug(
                    "pattern_cache_rebuilt",
                    generation=generation,
                    patterns=len(snapshot.patterns),
                    composites=len(snapshot.composites),
                )
        return snapshot

    # ── Invalidation ───────────────────────────────────

    def issue(self, kind: str, rule_id: int | None, reason: str) -> InvalidationToken:
        """Register an upcoming write; reads bypass the cache until it is consumed or discarded."""
        with self._lock:
            token = InvalidationToken(next(self._token_ids), kind, rule_id, reason)
            self._pending[token.id] = token
            self._snapshot = None
        return token

    def consume(self, token: InvalidationToken) -> None:
        """Confirm a committed write: bump the generation and drop the snapshot."""
        with self._lock:
            if self._pending.pop(token.id, None) is None:
                raise CacheInvalidationError(
                    token.kind, token.rule_id, f"Unknown or already consumed invalidation token {token.id}"
                )
            self._generation += 1
            self._snapshot = None
            self._stats["invalidations"] += 1
            generation = self._generation
        logger.info(
            "pattern_cache_invalidated",
            kind=token.kind,
            rule_id=token.rule_id,
            reason=token.reason,
            generation=generation,
        )

    def discard(self, token: InvalidationToken) -> None:
        """Release a token whose write was rolled back."""
        with self._lock:
            self._pending.pop(token.id, None)

    def invalidate(self, reason: str = "manual") -> None:
        with self._lock:
            self._generation += 1
            self._snapshot = None
            self._stats["invalidations"] += 1
        logger.info("pattern_cache_invalidated", kind="all", reason=reason)

    def stats(self) -> dict:
        with self._lock:
            return {
                **self._stats,
                "generation": self._generation,
                "pending": len(self._pending),
                "cached": self._snapshot is not None,
            }


async def commit_with_invalidation(
    db: AsyncSession,
    cache: PatternCache | None,
    kind: str,
    rule_id: int | None,
    reason: str,
) -> InvalidationToken | None:
    """Commit the session and confirm the matching cache invalidation.

    Raises CacheInvalidationError when the commit succeeded but the token could
    not be consumed.
    """
    if cache is None:
        await db.commit()
        return None

    token = cache.issue(kind, rule_id, reason)
    try:
        await db.commit()
    except Exception:
        cache.discard(token)
        raise

    try:
        cache.consume(token)
    except Exception as exc:
        logger.error(
            "pattern_cache_invalidation_failed",
            kind=kind,
            rule_id=rule_id,
            reason=reason,
            error=str(exc),
        )
        if isinstance(exc, CacheInvalidationError):
            raise
        raise CacheInvalidationError(kind, rule_id) from exc
    return token
