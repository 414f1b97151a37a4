"""Configuration models for voice sessions and capability tokens."""

from __future__ import annotations

from pydantic import BaseModel, Field


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp *value* into ``[lower, upper]``."""
    return max(lower, min(upper, value))


def clamp_int(value: int | float | None, default: int, lower: int, upper: int) -> int:
    """Clamp a user-supplied integer, falling back to *default* when unset."""
    if value is None:
        return default
    return int(clamp(round(value), lower, upper))


class RetryPolicy(BaseModel):
    """Configures reconnect behaviour for provider connections."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=0.5, gt=0.0)
    max_delay_seconds: float = Field(default=8.0, gt=0.0)
    exponential_base: float = Field(default=2.0, gt=0.0)


class VoiceSessionConfig(BaseModel):
    """Per-manager session limits.

    Attributes:
        max_session_minutes: Hard ceiling on session length, clamped to 1..120.
        inactivity_seconds: Idle time before the session ends, clamped to 20..3600.
        bot_turn_silence_ms: Quiet time after the last audio delta before the
            bot turn is considered closed.
        latency_ring_size: Number of finalized latency entries kept per session.
        reconnect: Backoff policy for re-establishing a dropped provider socket.
    """

    max_session_minutes: int = 10
    inactivity_seconds: int = 90
    bot_turn_silence_ms: int = Field(default=1200, ge=0)
    latency_ring_size: int = Field(default=50, gt=0)
    reconnect: RetryPolicy = Field(default_factory=RetryPolicy)

    @property
    def max_session_seconds(self) -> float:
        return clamp_int(self.max_session_minutes, 10, 1, 120) * 60.0

    @property
    def inactivity_timeout_seconds(self) -> float:
        return float(clamp_int(self.inactivity_seconds, 90, 20, 3600))


class CapabilityTokenConfig(BaseModel):
    """Screen-share capability token settings."""

    ttl_minutes: int = 12
    """Token lifetime. Clamped to 2..30 at grant time."""
    max_active_tokens: int = Field(default=240, gt=0)
    public_base_url: str = ""
    """When set, grants include a ``share_url`` of ``{base}/share/{token}``."""
    sweep_interval_seconds: float = Field(default=30.0, gt=0.0)

    @property
    def ttl_seconds(self) -> float:
        return clamp_int(self.ttl_minutes, 12, 2, 30) * 60.0


class StreamWatchConfig(BaseModel):
    """Limits applied to screen frames ingested through a capability token."""

    enabled: bool = True
    max_frame_bytes: int = 350_000
    """Clamped to 50_000..4_000_000."""
    max_frames_per_minute: int = 180
    """Clamped to 6..600."""
    allowed_mime_types: frozenset[str] = frozenset(
        {"image/jpeg", "image/jpg", "image/png", "image/webp"}
    )
    commentary_enabled: bool = True
    commentary_interval_seconds: int = 15
    """Minimum gap between spoken lines about forwarded frames. Clamped to 5..300."""

    @property
    def frame_byte_limit(self) -> int:
        return clamp_int(self.max_frame_bytes, 350_000, 50_000, 4_000_000)

    @property
    def frames_per_minute_limit(self) -> int:
        return clamp_int(self.max_frames_per_minute, 180, 6, 600)

    @property
    def commentary_gap(self) -> float:
        return float(clamp_int(self.commentary_interval_seconds, 15, 5, 300))
