"""Tests for CapabilityTokenManager."""

from __future__ import annotations

import asyncio
from typing import Any

from guildvoice.capability.tokens import (
    NOT_ARMED,
    CapabilityAuditEvent,
    CapabilityConsumer,
    CapabilityToken,
    CapabilityTokenManager,
    ConsumerResult,
)
from guildvoice.config import CapabilityTokenConfig
from tests.conftest import FakeClock


class FakeConsumer(CapabilityConsumer):
    def __init__(self) -> None:
        self.present: set[tuple[str, str, str]] = set()
        self.armed = False
        self.arm_calls = 0
        self.arm_result = ConsumerResult(ok=True, reason="watching_started")
        self.ingested: list[Any] = []
        self.not_armed_answers = 0
        self.arm_gate: asyncio.Event | None = None

    def join(self, user_id: str, guild_id: str = "g1", channel_id: str = "vc1") -> None:
        self.present.add((guild_id, channel_id, user_id))

    def leave(self, user_id: str, guild_id: str = "g1", channel_id: str = "vc1") -> None:
        self.present.discard((guild_id, channel_id, user_id))

    async def arm(
        self, guild_id: str, channel_id: str, requester_id: str, target_id: str
    ) -> ConsumerResult:
        self.arm_calls += 1
        if self.arm_gate is not None:
            await self.arm_gate.wait()
        if self.arm_result.ok:
            self.armed = True
        return self.arm_result

    async def ingest(self, token: CapabilityToken, payload: Any) -> ConsumerResult:
        if self.not_armed_answers > 0:
            self.not_armed_answers -= 1
            return ConsumerResult(ok=False, reason=NOT_ARMED)
        if not self.armed:
            return ConsumerResult(ok=False, reason=NOT_ARMED)
        self.ingested.append(payload)
        return ConsumerResult(ok=True, reason="ok")

    def is_present(self, guild_id: str, channel_id: str, user_id: str) -> bool:
        return (guild_id, channel_id, user_id) in self.present


def _manager(
    consumer: FakeConsumer,
    clock: FakeClock,
    audit: list[CapabilityAuditEvent] | None = None,
    **config: Any,
) -> CapabilityTokenManager:
    return CapabilityTokenManager(
        consumer,
        CapabilityTokenConfig(**config),
        clock=clock,
        on_audit=audit.append if audit is not None else None,
    )


class TestGrant:
    async def test_double_grant_reuses_token(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock)

        first = await tokens.grant("g1", "vc1", "u1")
        second = await tokens.grant("g1", "vc1", "u1", "u1")

        assert first.ok and second.ok
        assert second.reused
        assert first.token is second.token
        assert consumer.arm_calls == 1
        assert tokens.active_count == 1

    async def test_concurrent_grants_mint_once(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        consumer.arm_gate = asyncio.Event()
        tokens = _manager(consumer, clock)

        first = asyncio.create_task(tokens.grant("g1", "vc1", "u1"))
        second = asyncio.create_task(tokens.grant("g1", "vc1", "u1"))
        await asyncio.sleep(0)
        consumer.arm_gate.set()
        results = await asyncio.gather(first, second)

        assert consumer.arm_calls == 2
        assert results[0].token is results[1].token
        assert [r.reused for r in results] == [False, True]
        assert tokens.active_count == 1

    async def test_new_token_after_revoke(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock)

        first = await tokens.grant("g1", "vc1", "u1")
        assert tokens.revoke(first.token.token, "stopped")
        second = await tokens.grant("g1", "vc1", "u1")

        assert second.token.token != first.token.token
        assert not second.reused

    async def test_ttl_clamped(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock, ttl_minutes=90)

        grant = await tokens.grant("g1", "vc1", "u1")

        assert grant.token.expires_at - grant.token.created_at == 30 * 60

    async def test_consumer_refusal(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.arm_result = ConsumerResult(ok=False, reason="stream_watch_disabled")
        tokens = _manager(consumer, clock)

        grant = await tokens.grant("g1", "vc1", "u1")

        assert not grant.ok
        assert grant.reason == "stream_watch_disabled"
        assert "screen-share" in grant.message
        assert tokens.active_count == 0

    async def test_capacity_evicts_oldest(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        tokens = _manager(consumer, clock, max_active_tokens=3)
        granted = []
        for i in range(5):
            consumer.join(f"u{i}")
            granted.append((await tokens.grant("g1", "vc1", f"u{i}")).token.token)
            clock.tick(1)

        assert tokens.active_count == 3
        assert [t.token for t in tokens.tokens_for_guild("g1")] == granted[2:]


class TestUse:
    async def test_accepted(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock)
        grant = await tokens.grant("g1", "vc1", "u1")

        result = await tokens.use(grant.token.token, {"frame": 1})

        assert result.accepted
        assert consumer.ingested == [{"frame": 1}]
        assert grant.token.last_use_at == clock.now

    async def test_unknown_token(self, clock: FakeClock) -> None:
        tokens = _manager(FakeConsumer(), clock)
        result = await tokens.use("nope", {})
        assert not result.accepted
        assert result.reason == "token_not_found"

    async def test_requester_leaving_revokes(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        consumer.join("u2")
        audit: list[CapabilityAuditEvent] = []
        tokens = _manager(consumer, clock, audit)
        grant = await tokens.grant("g1", "vc1", "u1", "u2")

        consumer.leave("u1")
        result = await tokens.use(grant.token.token, {})

        assert not result.accepted
        assert result.reason == "requester_not_present"
        assert result.revoked
        assert tokens.get(grant.token.token) is None
        assert audit[-1].action == "revoked"
        assert audit[-1].token_suffix == grant.token.token[-8:]

    async def test_target_leaving_revokes(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        consumer.join("u2")
        tokens = _manager(consumer, clock)
        grant = await tokens.grant("g1", "vc1", "u1", "u2")

        consumer.leave("u2")
        result = await tokens.use(grant.token.token, {})

        assert result.reason == "target_not_present"
        assert tokens.active_count == 0

    async def test_expired_token(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock, ttl_minutes=2)
        grant = await tokens.grant("g1", "vc1", "u1")

        clock.tick(2 * 60)
        result = await tokens.use(grant.token.token, {})

        assert result.reason == "token_not_found"
        again = await tokens.grant("g1", "vc1", "u1")
        assert again.token.token != grant.token.token

    async def test_not_armed_rearms_once(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock)
        grant = await tokens.grant("g1", "vc1", "u1")
        consumer.not_armed_answers = 1

        result = await tokens.use(grant.token.token, "frame")

        assert result.accepted
        assert consumer.arm_calls == 2
        assert consumer.ingested == ["frame"]

    async def test_not_armed_twice_rejects(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock)
        grant = await tokens.grant("g1", "vc1", "u1")
        consumer.not_armed_answers = 2

        result = await tokens.use(grant.token.token, "frame")

        assert not result.accepted
        assert result.reason == NOT_ARMED
        assert consumer.arm_calls == 2


class TestHousekeeping:
    async def test_revoke_for_guild(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        consumer.join("u1", guild_id="g2")
        tokens = _manager(consumer, clock)
        await tokens.grant("g1", "vc1", "u1")
        await tokens.grant("g2", "vc1", "u1")

        assert tokens.revoke_for_guild("g1", "session_ended") == 1
        assert tokens.tokens_for_guild("g1") == []
        assert len(tokens.tokens_for_guild("g2")) == 1

    async def test_runtime_state_never_exposes_tokens(self, clock: FakeClock) -> None:
        consumer = FakeConsumer()
        consumer.join("u1")
        tokens = _manager(consumer, clock)
        grant = await tokens.grant("g1", "vc1", "u1")

        state = tokens.get_runtime_state()

        assert state["active_count"] == 1
        assert grant.token.token not in str(state)
        assert state["tokens"][0]["token_suffix"] == grant.token.suffix

    async def test_sweeper_lifecycle(self, clock: FakeClock) -> None:
        tokens = _manager(FakeConsumer(), clock, sweep_interval_seconds=0.01)
        tokens.start_sweeper()
        assert tokens._sweeper is not None
        await tokens.shutdown()
        assert tokens._sweeper is None
