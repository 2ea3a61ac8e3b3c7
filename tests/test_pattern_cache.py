"""Pattern cache invalidation protocol tests."""

import pytest

from expense_categorizer.core.exceptions import CacheInvalidationError
from expense_categorizer.models.composite_pattern import CompositePattern
from expense_categorizer.models.user_category_preference import UserCategoryPreference
from expense_categorizer.services.pattern_cache import PatternCache, SqlRuleStore, commit_with_invalidation
from expense_categorizer.services.rule_snapshot import RuleSnapshot
from tests.helpers import add_pattern


class FakeStore:
    def __init__(self):
        self.loads = 0
        self.on_load = None

    async def load(self) -> RuleSnapshot:
        self.loads += 1
        if self.on_load:
            self.on_load()
        return RuleSnapshot()


class FakeSession:
    def __init__(self, fail_commit=False):
        self.fail_commit = fail_commit
        self.commits = 0

    async def commit(self):
        if self.fail_commit:
            raise RuntimeError("database unavailable")
        self.commits += 1


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fake_cache(store):
    return PatternCache(store)


class TestReads:
    @pytest.mark.asyncio
    async def test_second_read_is_a_hit(self, fake_cache, store):
        first = await fake_cache.get_snapshot()
        second = await fake_cache.get_snapshot()

        assert first is second
        assert store.loads == 1
        stats = fake_cache.stats()
        assert (stats["hits"], stats["misses"], stats["rebuilds"]) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_pending_write_bypasses_cache(self, fake_cache, store):
        await fake_cache.get_snapshot()
        token = fake_cache.issue("pattern", 1, "updated")

        await fake_cache.get_snapshot()
        await fake_cache.get_snapshot()
        assert store.loads == 3
        assert fake_cache.stats()["cached"] is False

        fake_cache.consume(token)
        await fake_cache.get_snapshot()
        await fake_cache.get_snapshot()
        assert store.loads == 4
        assert fake_cache.generation == 1

    @pytest.mark.asyncio
    async def test_rebuild_racing_a_write_is_not_stored(self, fake_cache, store):
        def concurrent_write():
            store.on_load = None
            fake_cache.consume(fake_cache.issue("pattern", 7, "created"))

        store.on_load = concurrent_write
        await fake_cache.get_snapshot()
        assert fake_cache.stats()["cached"] is False

        await fake_cache.get_snapshot()
        assert fake_cache.stats()["cached"] is True
        assert store.loads == 2


class TestTokens:
    def test_double_consume_fails_loudly(self, fake_cache):
        token = fake_cache.issue("composite", 3, "deactivated")
        fake_cache.consume(token)
        with pytest.raises(CacheInvalidationError):
            fake_cache.consume(token)

    def test_discard_releases_bypass(self, fake_cache):
        token = fake_cache.issue("pattern", 1, "created")
        fake_cache.discard(token)
        assert fake_cache.stats()["pending"] == 0
        assert fake_cache.generation == 0

    @pytest.mark.asyncio
    async def test_commit_then_consume(self, fake_cache):
        session = FakeSession()
        token = await commit_with_invalidation(session, fake_cache, "pattern", 1, "created")

        assert session.commits == 1
        assert token.rule_id == 1
        assert fake_cache.stats()["pending"] == 0
        assert fake_cache.generation == 1

    @pytest.mark.asyncio
    async def test_failed_commit_discards_token(self, fake_cache):
        with pytest.raises(RuntimeError):
            await commit_with_invalidation(FakeSession(fail_commit=True), fake_cache, "pattern", 1, "x")
        assert fake_cache.stats()["pending"] == 0
        assert fake_cache.generation == 0

    @pytest.mark.asyncio
    async def test_failed_invalidation_surfaces_and_keeps_bypass(self, fake_cache, store, monkeypatch):
        await fake_cache.get_snapshot()

        def broken_consume(token):
            raise RuntimeError("broadcast failed")

        monkeypatch.setattr(fake_cache, "consume", broken_consume)
        with pytest.raises(CacheInvalidationError):
            await commit_with_invalidation(FakeSession(), fake_cache, "pattern", 1, "updated")

        assert fake_cache.stats()["pending"] == 1
        await fake_cache.get_snapshot()
        await fake_cache.get_snapshot()
        assert store.loads == 3

    @pytest.mark.asyncio
    async def test_without_cache_just_commits(self):
        session = FakeSession()
        assert await commit_with_invalidation(session, None, "pattern", 1, "created") is None
        assert session.commits == 1


class TestSqlRuleStore:
    @pytest.mark.asyncio
    async def test_loads_active_rules_and_resolves_components(self, db, session_factory, categories):
        coffee = categories["Coffee"].id
        active = await add_pattern(db, coffee, "merchant", "starbucks")
        retired = await add_pattern(db, coffee, "keyword", "latte", active=False)
        db.add_all(
            [
                CompositePattern(
                    category_id=coffee,
                    name="coffee run",
                    operator="OR",
                    pattern_ids=[active.id, retired.id],
                ),
                CompositePattern(
                    category_id=coffee, name="old", operator="AND", pattern_ids=[active.id], active=False
                ),
                UserCategoryPreference(
                    category_id=coffee,
                    context_type="merchant",
                    context_value="starbucks",
                    preference_weight=3,
                    usage_count=8,
                ),
            ]
        )
        await db.commit()

        snapshot = await SqlRuleStore(session_factory).load()

        assert [p.id for p in snapshot.patterns] == [active.id]
        [composite] = snapshot.composites
        assert [p.id for p in composite.components] == [active.id, retired.id]
        assert snapshot.preferences[("merchant", "starbucks")] == ((coffee, 3),)
