"""Read-only snapshots published to monitoring."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from guildvoice.models.enums import BotState, EndReason, ResponseStatus, SessionMode


class OutboundEventSnapshot(BaseModel):
    type: str
    preview: str
    sent_at: datetime


class ProviderStateSnapshot(BaseModel):
    """Provider connection state as seen by monitoring."""

    provider: str
    connected: bool
    session_id: str | None = None
    connected_at: datetime | None = None
    last_event_at: datetime | None = None
    active_response_id: str | None = None
    active_response_status: ResponseStatus | None = None
    reply_superseded_count: int = 0
    last_error: str | None = None
    last_close_code: int | None = None
    last_close_reason: str | None = None
    last_outbound_event_type: str | None = None
    recent_outbound_events: list[OutboundEventSnapshot] = Field(default_factory=list)
    input_sample_rate: int
    output_sample_rate: int


class LatencyTurnSnapshot(BaseModel):
    turn_id: str
    user_id: str | None = None
    captured_to_transcription_start_ms: float | None = None
    transcription_to_generation_start_ms: float | None = None
    generation_to_reply_request_ms: float | None = None
    reply_request_to_audio_start_ms: float | None = None
    total_ms: float | None = None
    abandoned: bool = False


class LatencySummary(BaseModel):
    count: int = 0
    averages: dict[str, float | None] = Field(default_factory=dict)
    recent: list[LatencyTurnSnapshot] = Field(default_factory=list)


class StreamWatchSnapshot(BaseModel):
    active: bool = False
    target_user_id: str | None = None
    requested_by_user_id: str | None = None
    last_frame_at: datetime | None = None
    ingested_frame_count: int = 0
    has_buffered_frame: bool = False


class SessionSnapshot(BaseModel):
    """Point-in-time view of one voice session."""

    session_id: str
    guild_id: str
    voice_channel_id: str
    text_channel_id: str | None = None
    mode: SessionMode
    bot_state: BotState
    started_at: datetime
    last_activity_at: datetime
    max_ends_at: datetime
    inactivity_ends_at: datetime
    participants: list[str] = Field(default_factory=list)
    active_captures: list[str] = Field(default_factory=list)
    bot_turn_open: bool = False
    pending_transcription_turns: int = 0
    pending_deferred_turns: int = 0
    provider: ProviderStateSnapshot | None = None
    latency: LatencySummary = Field(default_factory=LatencySummary)
    capability_token_count: int = 0
    stream_watch: StreamWatchSnapshot = Field(default_factory=StreamWatchSnapshot)
    ended: bool = False
    end_reason: EndReason | None = None


class RuntimeSnapshot(BaseModel):
    """All live sessions plus capability token bookkeeping."""

    session_count: int
    sessions: list[SessionSnapshot] = Field(default_factory=list)
    active_capability_tokens: int = 0
