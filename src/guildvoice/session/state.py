"""Runtime state for one guild's voice session."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from guildvoice.models.enums import BotState, EndReason, SessionMode, TranscriptRole, TranscriptSubtype
from guildvoice.models.snapshot import (
    LatencySummary,
    LatencyTurnSnapshot,
    OutboundEventSnapshot,
    ProviderStateSnapshot,
    SessionSnapshot,
    StreamWatchSnapshot,
)
from guildvoice.realtime.provider import ProviderProtocolClient
from guildvoice.session.latency import LatencyEntry, LatencyTracker

RECENT_TRANSCRIPTS = 40
RECENT_LATENCY_IN_SNAPSHOT = 8
SUPERSEDED_RESPONSE_MEMORY = 16


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, UTC)


@dataclass
class CaptureHandle:
    """An open user audio capture (one speaking burst)."""

    user_id: str
    started_at: float
    chunk_count: int = 0
    byte_count: int = 0
    turn: LatencyEntry | None = None


@dataclass
class TranscriptEntry:
    role: TranscriptRole
    text: str
    subtype: TranscriptSubtype
    at: float


@dataclass
class StreamWatchState:
    """Screen-frame watch armed for one target user."""

    active: bool = False
    target_user_id: str | None = None
    requested_by_user_id: str | None = None
    armed_at: float | None = None
    last_frame_at: float | None = None
    ingested_frame_count: int = 0
    frame_times: deque[float] = field(default_factory=deque)
    latest_frame_mime: str | None = None
    latest_frame_data: str | None = None
    last_commentary_at: float | None = None

    def reset(self) -> None:
        self.active = False
        self.target_user_id = None
        self.requested_by_user_id = None
        self.armed_at = None
        self.frame_times.clear()
        self.latest_frame_mime = None
        self.latest_frame_data = None
        self.last_commentary_at = None


@dataclass
class Session:
    """One live voice session, keyed by guild.

    Timestamps are epoch seconds. The session owns its provider
    connection and latency tracker; capability tokens are referenced by
    value and owned by the token manager.
    """

    guild_id: str
    voice_channel_id: str
    mode: SessionMode
    started_at: float
    max_ends_at: float
    inactivity_ends_at: float
    latency: LatencyTracker
    text_channel_id: str | None = None
    requested_by_user_id: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    last_activity_at: float = 0.0
    participants: set[str] = field(default_factory=set)
    bot_turn_open: bool = False
    last_bot_audio_at: float | None = None
    pending_transcription_turns: int = 0
    pending_deferred_turns: int = 0
    active_captures: dict[str, CaptureHandle] = field(default_factory=dict)
    connection: ProviderProtocolClient | None = None
    current_turn: LatencyEntry | None = None
    committed_turns: deque[LatencyEntry] = field(default_factory=deque)
    superseded_responses: dict[str, bool] = field(default_factory=dict)
    awaiting_reply_request: bool = False
    instructions: str = ""
    capability_tokens: set[str] = field(default_factory=set)
    stream_watch: StreamWatchState = field(default_factory=StreamWatchState)
    transcripts: deque[TranscriptEntry] = field(
        default_factory=lambda: deque(maxlen=RECENT_TRANSCRIPTS)
    )
    reconnect_attempts: int = 0
    ending: bool = False
    end_reason: EndReason | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.last_activity_at:
            self.last_activity_at = self.started_at

    def add_transcript(self, entry: TranscriptEntry) -> None:
        """Append a transcript; an agent correction replaces the last agent line."""
        if entry.subtype is TranscriptSubtype.AGENT_CORRECTION:
            for index in range(len(self.transcripts) - 1, -1, -1):
                if self.transcripts[index].role is TranscriptRole.ASSISTANT:
                    self.transcripts[index] = entry
                    return
        self.transcripts.append(entry)

    def remember_superseded(self, response_id: str, *, cancelled: bool) -> None:
        """Record a superseded reply so its late events can be told apart."""
        self.superseded_responses[response_id] = cancelled
        while len(self.superseded_responses) > SUPERSEDED_RESPONSE_MEMORY:
            del self.superseded_responses[next(iter(self.superseded_responses))]


def provider_snapshot(client: ProviderProtocolClient) -> ProviderStateSnapshot:
    state = client.get_state()
    return ProviderStateSnapshot(
        provider=client.name,
        connected=state.connected,
        session_id=state.session_id,
        connected_at=state.connected_at,
        last_event_at=state.last_event_at,
        active_response_id=state.active_response_id,
        active_response_status=state.active_response_status,
        reply_superseded_count=state.reply_superseded_count,
        last_error=state.last_error,
        last_close_code=state.last_close_code,
        last_close_reason=state.last_close_reason,
        last_outbound_event_type=state.last_outbound_event_type,
        recent_outbound_events=[
            OutboundEventSnapshot(type=e.type, preview=e.preview, sent_at=e.sent_at)
            for e in state.recent_outbound_events
        ],
        input_sample_rate=state.input_sample_rate,
        output_sample_rate=state.output_sample_rate,
    )


def build_snapshot(session: Session, bot_state: BotState, *, ended: bool = False) -> SessionSnapshot:
    """Copy *session* into an immutable monitoring snapshot."""
    entries = session.latency.entries
    watch = session.stream_watch
    return SessionSnapshot(
        session_id=session.id,
        guild_id=session.guild_id,
        voice_channel_id=session.voice_channel_id,
        text_channel_id=session.text_channel_id,
        mode=session.mode,
        bot_state=bot_state,
        started_at=_ts(session.started_at),
        last_activity_at=_ts(session.last_activity_at),
        max_ends_at=_ts(session.max_ends_at),
        inactivity_ends_at=_ts(session.inactivity_ends_at),
        participants=sorted(session.participants),
        active_captures=sorted(session.active_captures),
        bot_turn_open=session.bot_turn_open,
        pending_transcription_turns=session.pending_transcription_turns,
        pending_deferred_turns=session.pending_deferred_turns,
        provider=provider_snapshot(session.connection) if session.connection else None,
        latency=LatencySummary(
            count=len(entries),
            averages=session.latency.averages(),
            recent=[
                LatencyTurnSnapshot(
                    turn_id=e.turn_id,
                    user_id=e.user_id,
                    total_ms=e.total_ms,
                    abandoned=e.abandoned,
                    **e.stage_durations(),
                )
                for e in entries[-RECENT_LATENCY_IN_SNAPSHOT:]
            ],
        ),
        capability_token_count=len(session.capability_tokens),
        stream_watch=StreamWatchSnapshot(
            active=watch.active,
            target_user_id=watch.target_user_id,
            requested_by_user_id=watch.requested_by_user_id,
            last_frame_at=_ts(watch.last_frame_at) if watch.last_frame_at else None,
            ingested_frame_count=watch.ingested_frame_count,
            has_buffered_frame=watch.latest_frame_data is not None,
        ),
        ended=ended,
        end_reason=session.end_reason,
    )
