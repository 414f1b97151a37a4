"""Normalized events emitted by provider protocol clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from guildvoice.models.enums import ResponseStatus, TranscriptRole, TranscriptSubtype


def _utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class AudioDelta:
    """A chunk of agent audio (decoded PCM)."""

    audio: bytes
    response_id: str | None = None
    type: Literal["audio_delta"] = field(default="audio_delta", init=False)
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Transcript:
    """User or agent text produced by the provider.

    A transcript with subtype ``AGENT_CORRECTION`` replaces the agent
    transcript emitted before it.
    """

    role: TranscriptRole
    text: str
    subtype: TranscriptSubtype
    is_final: bool = True
    type: Literal["transcript"] = field(default="transcript", init=False)
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ResponseDone:
    """Terminal status of one agent response."""

    status: ResponseStatus
    response_id: str | None = None
    type: Literal["response_done"] = field(default="response_done", init=False)
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ProviderErrorEvent:
    """Error reported by the provider over the open connection."""

    code: str
    message: str
    type: Literal["error"] = field(default="error", init=False)
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ConnectionClosed:
    """The provider socket closed without the owner asking for it."""

    code: int | None = None
    reason: str = ""
    type: Literal["connection_closed"] = field(default="connection_closed", init=False)
    timestamp: datetime = field(default_factory=_utcnow)


ProviderEvent = AudioDelta | Transcript | ResponseDone | ProviderErrorEvent | ConnectionClosed
