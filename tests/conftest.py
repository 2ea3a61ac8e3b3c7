"""Shared test fixtures."""

import pytest
from sqlalchemy.pool import StaticPool

from expense_categorizer.config import Settings
from expense_categorizer.core.database import build_engine, build_session_factory
from expense_categorizer.models import Base, Category
from expense_categorizer.services.pattern_cache import PatternCache, SqlRuleStore
from expense_categorizer.services.rule_locks import RuleLocks


@pytest.fixture
def test_settings():
    return Settings(_env_file=None)


@pytest.fixture
async def engine():
    """In-memory SQLite database shared by every session of one test."""
    db_engine = build_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache(session_factory):
    return PatternCache(SqlRuleStore(session_factory))


@pytest.fixture
def locks():
    return RuleLocks()


@pytest.fixture
async def categories(db):
    rows = [Category(name="Coffee"), Category(name="Transport"), Category(name="Groceries")]
    db.add_all(rows)
    await db.commit()
    return {category.name: category for category in rows}
