"""Per-rule lock registry."""

import asyncio

import pytest

from expense_categorizer.core.enums import RuleKind
from expense_categorizer.services.rule_locks import RuleLocks


def test_same_rule_shares_a_lock():
    locks = RuleLocks()
    lock = locks.get("pattern", 1)
    assert locks.get(RuleKind.PATTERN, 1) is lock
    assert locks.get("composite", 1) is not lock


@pytest.mark.asyncio
async def test_released_locks_are_dropped():
    locks = RuleLocks()
    for rule_id in range(50):
        async with locks.hold("pattern", rule_id):
            assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_hold_serializes_one_rule():
    locks = RuleLocks()
    order = []

    async def write(name):
        async with locks.hold("pattern", 1):
            order.append(f"{name} start")
            await asyncio.sleep(0)
            order.append(f"{name} end")

    await asyncio.gather(write("a"), write("b"))

    assert order == ["a start", "a end", "b start", "b end"]
    assert len(locks) == 0
