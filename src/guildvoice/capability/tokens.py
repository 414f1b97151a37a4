"""Short-lived capability tokens for screen-share frame ingestion."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from guildvoice.config import CapabilityTokenConfig

logger = logging.getLogger("guildvoice.capability.tokens")

TOKEN_BYTES = 18
SUFFIX_CHARS = 8
NOT_ARMED = "not_armed"
REQUESTER_NOT_PRESENT = "requester_not_present"
TARGET_NOT_PRESENT = "target_not_present"
TOKEN_NOT_FOUND = "token_not_found"
GRANT_FALLBACK_MESSAGE = (
    "can't start screen-share watching right now. "
    "make sure we're in vc together and stream watch is enabled."
)


def token_suffix(token: str) -> str:
    """The only part of a token that may be logged."""
    return token[-SUFFIX_CHARS:]


@dataclass
class CapabilityToken:
    """One live grant, bound to the channel it was minted against."""

    token: str
    guild_id: str
    channel_id: str
    requester_id: str
    target_id: str
    created_at: float
    expires_at: float
    last_use_at: float | None = None
    source: str = "screen_share"

    @property
    def suffix(self) -> str:
        return token_suffix(self.token)

    def ttl_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


@dataclass(frozen=True)
class ConsumerResult:
    """Outcome reported by the capability consumer."""

    ok: bool
    reason: str
    message: str = ""


@dataclass(frozen=True)
class GrantResult:
    ok: bool
    reason: str
    token: CapabilityToken | None = None
    message: str = ""
    reused: bool = False


@dataclass(frozen=True)
class UseResult:
    accepted: bool
    reason: str
    revoked: bool = False


@dataclass(frozen=True)
class CapabilityAuditEvent:
    """Lifecycle record for a token; carries the suffix, never the token."""

    action: Literal["granted", "reused", "revoked"]
    guild_id: str
    token_suffix: str
    reason: str
    at: float = field(default_factory=time.time)


CapabilityAuditCallback = Callable[[CapabilityAuditEvent], Any]


class CapabilityConsumer(ABC):
    """The feature a capability token unlocks.

    ``arm`` prepares the consumer for a target (for screen share: start
    watching the target's stream). ``ingest`` hands it one payload and
    reports ``not_armed`` when the consumer lost its armed state.
    ``is_present`` answers whether a user is still in the given channel.
    """

    @abstractmethod
    async def arm(
        self, guild_id: str, channel_id: str, requester_id: str, target_id: str
    ) -> ConsumerResult: ...

    @abstractmethod
    async def ingest(self, token: CapabilityToken, payload: Any) -> ConsumerResult: ...

    @abstractmethod
    def is_present(self, guild_id: str, channel_id: str, user_id: str) -> bool: ...


class CapabilityTokenManager:
    """Mints, validates, and revokes capability tokens.

    Tokens are opaque url-safe strings with a TTL (2..30 minutes, default
    12). The store is capped; beyond the cap the oldest-created token is
    evicted. Expired tokens are purged lazily on every call and,
    optionally, by a background sweeper. Store mutations never span an
    await, so no lock is held across consumer I/O.

    Example:
        tokens = CapabilityTokenManager(consumer)
        grant = await tokens.grant("g1", "vc1", requester_id="u1", target_id="u1")
        result = await tokens.use(grant.token.token, frame)
    """

    def __init__(
        self,
        consumer: CapabilityConsumer,
        config: CapabilityTokenConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        on_audit: CapabilityAuditCallback | None = None,
    ) -> None:
        self._consumer = consumer
        self._config = config or CapabilityTokenConfig()
        self._clock = clock
        self._on_audit = on_audit
        self._tokens: dict[str, CapabilityToken] = {}
        self._sweeper: asyncio.Task[None] | None = None

    # -- Operations --

    async def grant(
        self,
        guild_id: str,
        channel_id: str,
        requester_id: str,
        target_id: str | None = None,
    ) -> GrantResult:
        """Return a live token for the tuple, minting one if needed."""
        target_id = target_id or requester_id
        self.sweep()

        existing = self._find(guild_id, channel_id, requester_id, target_id)
        if existing is not None:
            if self._presence_failure(existing) is None:
                self._audit("reused", existing, "reused")
                return GrantResult(ok=True, reason="reused", token=existing, reused=True)
            self.revoke(existing.token, "presence_changed")

        armed = await self._consumer.arm(guild_id, channel_id, requester_id, target_id)
        if not armed.ok:
            logger.info(
                "Capability grant refused guild=%s requester=%s reason=%s",
                guild_id,
                requester_id,
                armed.reason,
            )
            return GrantResult(
                ok=False,
                reason=armed.reason or "consumer_unavailable",
                message=armed.message or GRANT_FALLBACK_MESSAGE,
            )

        # Another grant for the same tuple may have minted while arm() was suspended.
        raced = self._find(guild_id, channel_id, requester_id, target_id)
        if raced is not None and self._presence_failure(raced) is None:
            self._audit("reused", raced, "reused")
            return GrantResult(ok=True, reason="reused", token=raced, reused=True)

        now = self._clock()
        record = CapabilityToken(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            guild_id=guild_id,
            channel_id=channel_id,
            requester_id=requester_id,
            target_id=target_id,
            created_at=now,
            expires_at=now + self._config.ttl_seconds,
        )
        self._tokens[record.token] = record
        self._evict_over_capacity()
        logger.info(
            "screen_share_session_created guild=%s requester=%s target=%s token_suffix=%s",
            guild_id,
            requester_id,
            target_id,
            record.suffix,
        )
        self._audit("granted", record, "granted")
        return GrantResult(ok=True, reason="granted", token=record)

    async def use(self, token: str, payload: Any) -> UseResult:
        """Validate *token* and hand *payload* to the consumer.

        A ``not_armed`` answer triggers exactly one re-arm and one retry.
        """
        self.sweep()
        record = self._tokens.get(token)
        if record is None:
            return UseResult(accepted=False, reason=TOKEN_NOT_FOUND)

        failure = self._presence_failure(record)
        if failure is not None:
            self.revoke(token, failure)
            return UseResult(accepted=False, reason=failure, revoked=True)

        result = await self._consumer.ingest(record, payload)
        if not result.ok and result.reason == NOT_ARMED:
            logger.info("Re-arming capability consumer for token_suffix=%s", record.suffix)
            rearmed = await self._consumer.arm(
                record.guild_id, record.channel_id, record.requester_id, record.target_id
            )
            if not rearmed.ok:
                return UseResult(accepted=False, reason=rearmed.reason or NOT_ARMED)
            result = await self._consumer.ingest(record, payload)

        if result.ok:
            record.last_use_at = self._clock()
        return UseResult(accepted=result.ok, reason=result.reason)

    def revoke(self, token: str, reason: str = "stopped") -> bool:
        """Delete *token*. Returns False if it was not live."""
        record = self._tokens.pop(token, None)
        if record is None:
            return False
        logger.info(
            "screen_share_session_stopped guild=%s token_suffix=%s reason=%s",
            record.guild_id,
            record.suffix,
            reason,
        )
        self._audit("revoked", record, reason)
        return True

    def revoke_for_guild(self, guild_id: str, reason: str) -> int:
        tokens = [t.token for t in self._tokens.values() if t.guild_id == guild_id]
        for token in tokens:
            self.revoke(token, reason)
        return len(tokens)

    # -- Housekeeping --

    def sweep(self) -> int:
        """Purge expired tokens, then enforce the capacity cap."""
        now = self._clock()
        expired = [t.token for t in self._tokens.values() if t.expires_at <= now]
        for token in expired:
            self.revoke(token, "expired")
        return len(expired) + self._evict_over_capacity()

    def _evict_over_capacity(self) -> int:
        evicted = 0
        while len(self._tokens) > self._config.max_active_tokens:
            oldest = min(self._tokens.values(), key=lambda t: t.created_at)
            logger.debug("Evicting capability token_suffix=%s (capacity)", oldest.suffix)
            self.revoke(oldest.token, "capacity")
            evicted += 1
        return evicted

    def start_sweeper(self) -> None:
        """Start a background task that sweeps on the configured interval."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="capability_token_sweeper")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Capability token sweep failed")

    async def shutdown(self) -> None:
        task = self._sweeper
        self._sweeper = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # -- Queries --

    def get(self, token: str) -> CapabilityToken | None:
        self.sweep()
        return self._tokens.get(token)

    def tokens_for_guild(self, guild_id: str) -> list[CapabilityToken]:
        return [t for t in self._tokens.values() if t.guild_id == guild_id]

    def now(self) -> float:
        return self._clock()

    @property
    def active_count(self) -> int:
        return len(self._tokens)

    def get_runtime_state(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "active_count": len(self._tokens),
            "tokens": [
                {
                    "token_suffix": t.suffix,
                    "guild_id": t.guild_id,
                    "channel_id": t.channel_id,
                    "requester_id": t.requester_id,
                    "target_id": t.target_id,
                    "expires_in_seconds": round(t.ttl_remaining(now), 1),
                    "last_use_at": t.last_use_at,
                }
                for t in self._tokens.values()
            ],
        }

    # -- Internals --

    def _find(
        self, guild_id: str, channel_id: str, requester_id: str, target_id: str
    ) -> CapabilityToken | None:
        for record in self._tokens.values():
            if (
                record.guild_id == guild_id
                and record.channel_id == channel_id
                and record.requester_id == requester_id
                and record.target_id == target_id
            ):
                return record
        return None

    def _presence_failure(self, record: CapabilityToken) -> str | None:
        if not self._consumer.is_present(record.guild_id, record.channel_id, record.requester_id):
            return REQUESTER_NOT_PRESENT
        if not self._consumer.is_present(record.guild_id, record.channel_id, record.target_id):
            return TARGET_NOT_PRESENT
        return None

    def _audit(
        self,
        action: Literal["granted", "reused", "revoked"],
        record: CapabilityToken,
        reason: str,
    ) -> None:
        if self._on_audit is None:
            return
        event = CapabilityAuditEvent(
            action=action,
            guild_id=record.guild_id,
            token_suffix=record.suffix,
            reason=reason,
            at=self._clock(),
        )
        try:
            self._on_audit(event)
        except Exception:
            logger.exception("Error in capability audit callback")
