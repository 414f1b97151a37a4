"""Tests for GuildLocks."""

from __future__ import annotations

import asyncio

import pytest

from guildvoice.core.locks import GuildLocks


class TestGuildLocks:
    async def test_serializes_one_guild(self) -> None:
        locks = GuildLocks()
        active = 0
        peak = 0

        async def task() -> None:
            nonlocal active, peak
            async with locks.locked("g1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0)
                active -= 1

        await asyncio.gather(task(), task(), task())
        assert peak == 1

    async def test_guilds_do_not_block_each_other(self) -> None:
        locks = GuildLocks()
        async with locks.locked("g1"):
            async with asyncio.timeout(1):
                async with locks.locked("g2"):
                    assert locks.is_locked("g1")
                    assert locks.is_locked("g2")

    async def test_entry_dropped_after_last_user(self) -> None:
        locks = GuildLocks()
        entered = asyncio.Event()

        async def waiter() -> None:
            async with locks.locked("g1"):
                entered.set()

        async with locks.locked("g1"):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            assert locks.size == 1
            assert not entered.is_set()
        await task

        assert entered.is_set()
        assert locks.size == 0
        assert not locks.is_locked("g1")

    async def test_entry_dropped_when_body_raises(self) -> None:
        locks = GuildLocks()
        with pytest.raises(RuntimeError):
            async with locks.locked("g1"):
                raise RuntimeError("boom")
        assert locks.size == 0
