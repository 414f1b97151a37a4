"""VoiceSessionManager: the per-guild voice session root."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from guildvoice.capability.tokens import (
    REQUESTER_NOT_PRESENT,
    CapabilityAuditEvent,
    CapabilityConsumer,
    CapabilityToken,
    CapabilityTokenManager,
    ConsumerResult,
)
from guildvoice.config import CapabilityTokenConfig, StreamWatchConfig, VoiceSessionConfig
from guildvoice.core.locks import GuildLocks
from guildvoice.core.retry import reconnect_with_backoff
from guildvoice.errors import (
    GuildVoiceError,
    ProviderNotConnectedError,
    ReconnectAborted,
    SessionNotFoundError,
)
from guildvoice.models.enums import (
    BotState,
    EndReason,
    MonitorEventKind,
    ResponseStatus,
    SessionMode,
    TranscriptRole,
    TranscriptSubtype,
    TurnStage,
)
from guildvoice.models.snapshot import RuntimeSnapshot, SessionSnapshot
from guildvoice.monitor.base import MonitorBackend, MonitorEvent
from guildvoice.realtime.events import (
    AudioDelta,
    ConnectionClosed,
    ProviderErrorEvent,
    ProviderEvent,
    ResponseDone,
    Transcript,
)
from guildvoice.realtime.factory import (
    ProtocolClientFactory,
    ProviderSettings,
    protocol_client_factory,
)
from guildvoice.realtime.provider import RealtimeSessionConfig
from guildvoice.session.latency import LatencyEntry, LatencyTracker
from guildvoice.session.pipeline import AudioSink
from guildvoice.session.state import CaptureHandle, Session, TranscriptEntry, build_snapshot
from guildvoice.session.stream_watch import FramePayload, StreamWatch, WatchResult
from guildvoice.session.turns import TurnCoordinator

logger = logging.getLogger("guildvoice.session.manager")

_TERMINAL_INTERRUPTIONS = frozenset(
    {ResponseStatus.INTERRUPTED, ResponseStatus.CANCELLED, ResponseStatus.FAILED}
)


@dataclass
class _SessionRuntime:
    """Tasks owned by one session; all are cancelled when it ends."""

    drain: asyncio.Task[None] | None = None
    timer: asyncio.Task[None] | None = None
    silence: asyncio.Task[None] | None = None
    reconnect: asyncio.Task[None] | None = None
    extra: set[asyncio.Task[Any]] = field(default_factory=set)
    last_state: BotState | None = None

    def all_tasks(self) -> list[asyncio.Task[Any]]:
        tasks = [self.drain, self.timer, self.silence, self.reconnect, *self.extra]
        return [t for t in tasks if t is not None]


class _StreamWatchConsumer(CapabilityConsumer):
    """Capability consumer backed by the session's stream watch."""

    def __init__(self, manager: VoiceSessionManager) -> None:
        self._manager = manager

    async def arm(
        self, guild_id: str, channel_id: str, requester_id: str, target_id: str
    ) -> ConsumerResult:
        session = self._manager.get_session(guild_id)
        if session is None:
            return ConsumerResult(ok=False, reason="session_not_found")
        if session.voice_channel_id != channel_id:
            return ConsumerResult(ok=False, reason=REQUESTER_NOT_PRESENT)
        result = self._manager.enable_stream_watch(
            guild_id, requester_id=requester_id, target_id=target_id
        )
        return ConsumerResult(ok=result.ok, reason=result.reason)

    async def ingest(self, token: CapabilityToken, payload: Any) -> ConsumerResult:
        if not isinstance(payload, FramePayload):
            return ConsumerResult(ok=False, reason="invalid_request")
        if payload.streamer_id is None:
            payload = dataclasses.replace(payload, streamer_id=token.target_id)
        result = await self._manager.ingest_stream_frame(token.guild_id, payload)
        return ConsumerResult(ok=result.ok, reason=result.reason)

    def is_present(self, guild_id: str, channel_id: str, user_id: str) -> bool:
        return self._manager.is_user_in_session_voice_channel(guild_id, channel_id, user_id)


class VoiceSessionManager:
    """Owns every live voice session, at most one per guild.

    Each realtime session owns one provider client whose events are
    drained in receipt order by a per-session task. Sessions end on max
    duration, inactivity, explicit leave, the bot losing its channel, a
    provider error, or shutdown. Ending closes the client without waiting
    on the provider, cancels the session's tasks, revokes its capability
    tokens, and publishes a terminal snapshot before the session is
    removed.

    Example:
        manager = VoiceSessionManager(provider_settings=settings, bot_user_id="bot")
        session = await manager.start("g1", "vc1", mode=SessionMode.ELEVENLABS_REALTIME)
        manager.apply_participant_change("g1", "u1", "vc1")
        await manager.end("g1", EndReason.EXPLICIT_LEAVE)
    """

    def __init__(
        self,
        *,
        config: VoiceSessionConfig | None = None,
        provider_settings: ProviderSettings | None = None,
        client_factory: ProtocolClientFactory | None = None,
        monitor: MonitorBackend | None = None,
        audio_sink: AudioSink | None = None,
        capability_config: CapabilityTokenConfig | None = None,
        stream_watch_config: StreamWatchConfig | None = None,
        bot_user_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or VoiceSessionConfig()
        if client_factory is None:
            client_factory = protocol_client_factory(provider_settings or ProviderSettings())
        self._client_factory = client_factory
        self._monitor = monitor
        self._audio_sink = audio_sink
        self._locks = GuildLocks()
        self._bot_user_id = bot_user_id
        self._clock = clock
        self._coordinator = TurnCoordinator()
        self._stream_watch = StreamWatch(stream_watch_config, clock=clock)
        self.capabilities = CapabilityTokenManager(
            _StreamWatchConsumer(self),
            capability_config,
            clock=clock,
            on_audit=self._on_capability_audit,
        )

        self._sessions: dict[str, Session] = {}
        self._runtimes: dict[str, _SessionRuntime] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._outbox: asyncio.Queue[MonitorEvent] = asyncio.Queue()
        self._publisher: asyncio.Task[None] | None = None

    # -- Lifecycle --

    async def start(
        self,
        guild_id: str,
        voice_channel_id: str,
        *,
        mode: SessionMode,
        text_channel_id: str | None = None,
        requested_by_user_id: str | None = None,
        participants: Iterable[str] = (),
        instructions: str = "",
    ) -> Session:
        """Start a session for *guild_id*, or return the live one.

        Raises:
            ProviderConnectError: The realtime provider could not be reached.
            ConfigurationError: The provider for *mode* is not configured.
        """
        async with self._locks.locked(guild_id):
            existing = self._sessions.get(guild_id)
            if existing is not None and not existing.ending:
                logger.debug("Session already live for guild %s", guild_id)
                return existing

            now = self._clock()
            session = Session(
                guild_id=guild_id,
                voice_channel_id=voice_channel_id,
                mode=mode,
                started_at=now,
                max_ends_at=now + self._config.max_session_seconds,
                inactivity_ends_at=now + self._config.inactivity_timeout_seconds,
                latency=LatencyTracker(self._config.latency_ring_size),
                text_channel_id=text_channel_id,
                requested_by_user_id=requested_by_user_id,
                participants=set(participants),
                instructions=instructions,
            )

            if mode.is_realtime:
                client = self._client_factory(mode)
                try:
                    await client.connect(self._session_config(session))
                except BaseException:
                    with contextlib.suppress(Exception):
                        await client.close()
                    raise
                session.connection = client

            runtime = _SessionRuntime()
            self._sessions[guild_id] = session
            self._runtimes[session.id] = runtime
            if session.connection is not None:
                runtime.drain = self._spawn(self._drain_events(session), f"voice_drain:{guild_id}")
            runtime.timer = self._spawn(self._deadline_loop(session), f"voice_timer:{guild_id}")

            logger.info(
                "Voice session started guild=%s channel=%s mode=%s session=%s",
                guild_id,
                voice_channel_id,
                mode,
                session.id,
            )
            self._publish(session, MonitorEventKind.SESSION_START, {"mode": mode.value})
            self._publish_state(session, force=True)
            return session

    async def end(self, guild_id: str, reason: EndReason) -> SessionSnapshot | None:
        """End the guild's session. Returns the terminal snapshot, or None if none was live."""
        async with self._locks.locked(guild_id):
            session = self._sessions.get(guild_id)
            if session is None or session.ending:
                return None
            session.ending = True
            session.end_reason = reason

            runtime = self._runtimes.pop(session.id, None)
            if runtime is not None:
                current = asyncio.current_task()
                for task in runtime.all_tasks():
                    if task is not current:
                        task.cancel()

            session.latency.abandon_open_turns()
            session.current_turn = None
            session.committed_turns.clear()
            session.active_captures.clear()
            session.pending_transcription_turns = 0
            session.pending_deferred_turns = 0
            session.bot_turn_open = False

            self.capabilities.revoke_for_guild(guild_id, f"session_{reason.value}")
            self._stream_watch.stop(session, reason.value)

            if session.connection is not None:
                task = asyncio.create_task(
                    self._close_connection(session), name=f"voice_close:{guild_id}"
                )
                self._background.add(task)
                task.add_done_callback(self._background.discard)

            snapshot = build_snapshot(session, BotState.DISCONNECTED, ended=True)
            self._publish(
                session,
                MonitorEventKind.SESSION_END,
                {"reason": reason.value, "snapshot": snapshot.model_dump(mode="json")},
            )
            del self._sessions[guild_id]
            logger.info(
                "Voice session ended guild=%s reason=%s session=%s", guild_id, reason, session.id
            )
            return snapshot

    async def shutdown(self) -> None:
        """End every session and stop background work."""
        for guild_id in list(self._sessions):
            await self.end(guild_id, EndReason.SHUTDOWN)
        await self.capabilities.shutdown()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._publisher is not None:
            if self._monitor is not None:
                await self._outbox.join()
            self._publisher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._publisher
            self._publisher = None

    async def _close_connection(self, session: Session) -> None:
        connection = session.connection
        if connection is None:
            return
        try:
            await connection.close()
        except Exception:
            logger.exception("Error closing provider connection for guild %s", session.guild_id)

    # -- Queries --

    def get_session(self, guild_id: str) -> Session | None:
        session = self._sessions.get(guild_id)
        if session is None or session.ending:
            return None
        return session

    def require_session(self, guild_id: str) -> Session:
        session = self.get_session(guild_id)
        if session is None:
            raise SessionNotFoundError(f"No voice session for guild {guild_id}")
        return session

    def get_snapshot(self, guild_id: str) -> SessionSnapshot | None:
        session = self.get_session(guild_id)
        if session is None:
            return None
        return build_snapshot(session, self._coordinator.derive_state(session))

    def get_bot_state(self, guild_id: str) -> BotState | None:
        session = self.get_session(guild_id)
        return self._coordinator.derive_state(session) if session is not None else None

    def get_runtime_state(self) -> RuntimeSnapshot:
        sessions = [
            build_snapshot(s, self._coordinator.derive_state(s))
            for s in self._sessions.values()
            if not s.ending
        ]
        return RuntimeSnapshot(
            session_count=len(sessions),
            sessions=sessions,
            active_capability_tokens=self.capabilities.active_count,
        )

    def is_user_in_session_voice_channel(self, guild_id: str, channel_id: str, user_id: str) -> bool:
        session = self.get_session(guild_id)
        if session is None or session.voice_channel_id != channel_id:
            return False
        return user_id in session.participants

    @property
    def session_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.ending)

    # -- Presence --

    async def apply_participant_change(
        self, guild_id: str, user_id: str, channel_id: str | None
    ) -> None:
        """Apply a voice-state update: *user_id* is now in *channel_id* (None = left)."""
        session = self.get_session(guild_id)
        if session is None:
            return

        if self._bot_user_id is not None and user_id == self._bot_user_id:
            if channel_id != session.voice_channel_id:
                logger.warning(
                    "Bot left voice channel %s in guild %s (now %s)",
                    session.voice_channel_id,
                    guild_id,
                    channel_id,
                )
                await self.end(guild_id, EndReason.PRESENCE_VIOLATION)
            return

        if channel_id == session.voice_channel_id:
            session.participants.add(user_id)
        else:
            session.participants.discard(user_id)
            capture = session.active_captures.pop(user_id, None)
            if capture is not None and capture.turn is not None:
                session.latency.abandon(capture.turn)
            watch = session.stream_watch
            if watch.active and user_id in (watch.target_user_id, watch.requested_by_user_id):
                self._stream_watch.stop(session, "participant_left")
        self._publish_state(session)

    def touch_activity(self, guild_id: str) -> None:
        session = self.get_session(guild_id)
        if session is not None:
            self._touch(session)

    def _touch(self, session: Session) -> None:
        now = self._clock()
        session.last_activity_at = now
        session.inactivity_ends_at = now + self._config.inactivity_timeout_seconds

    # -- User capture (realtime) --

    def begin_capture(self, guild_id: str, user_id: str) -> CaptureHandle:
        """Open a capture for *user_id*; returns the existing one if already open."""
        session = self.require_session(guild_id)
        handle = session.active_captures.get(user_id)
        if handle is not None:
            return handle
        now = self._clock()
        handle = CaptureHandle(
            user_id=user_id,
            started_at=now,
            turn=session.latency.begin_turn(now * 1000, user_id=user_id),
        )
        session.active_captures[user_id] = handle
        self._touch(session)
        self._publish_state(session)
        return handle

    async def append_capture_audio(self, guild_id: str, user_id: str, audio: bytes) -> None:
        session = self.require_session(guild_id)
        handle = session.active_captures.get(user_id) or self.begin_capture(guild_id, user_id)
        handle.chunk_count += 1
        handle.byte_count += len(audio)
        self._touch(session)
        connection = session.connection
        if connection is None or not connection.get_state().connected:
            return
        await connection.append_input_audio(audio)

    async def end_capture(
        self, guild_id: str, user_id: str, *, commit: bool = True
    ) -> CaptureHandle | None:
        """Close *user_id*'s capture.

        In realtime mode a non-empty capture is committed to the provider
        and a response is requested. In segmented mode the handle's latency
        turn is returned for the turn runner to carry on.
        """
        session = self.require_session(guild_id)
        handle = session.active_captures.pop(user_id, None)
        if handle is None:
            return None
        turn = handle.turn
        connection = session.connection

        if connection is None:
            if turn is not None and (not commit or handle.chunk_count == 0):
                session.latency.abandon(turn)
            self._publish_state(session)
            return handle

        if not commit or handle.chunk_count == 0 or not connection.get_state().connected:
            if turn is not None:
                session.latency.abandon(turn)
            self._publish_state(session)
            return handle

        try:
            await connection.commit_input_audio()
            if turn is not None:
                session.latency.mark_stage(turn, TurnStage.TRANSCRIPTION_START, self._now_ms())
                session.committed_turns.append(turn)
            await connection.request_response()
        except ProviderNotConnectedError:
            logger.info("Commit dropped for guild %s: provider socket is not open", guild_id)
            if turn is not None:
                session.latency.abandon(turn)
        self._publish_state(session)
        return handle

    async def request_text_utterance(self, guild_id: str, text: str) -> None:
        session = self.require_session(guild_id)
        if session.connection is None:
            raise GuildVoiceError("Text utterances need a realtime session")
        await session.connection.request_text_utterance(text)
        self._touch(session)

    # -- Turn recording --

    def begin_turn(
        self, guild_id: str, user_id: str, *, turn: LatencyEntry | None = None
    ) -> LatencyEntry:
        """Make a new user turn current (awaiting the bot's reply)."""
        session = self.require_session(guild_id)
        if turn is None or turn.finalized:
            turn = session.latency.begin_turn(self._now_ms(), user_id=user_id)
        self._set_current_turn(session, turn)
        self._publish(session, MonitorEventKind.TURN_IN, {"user_id": user_id, "turn_id": turn.turn_id})
        self._publish_state(session)
        return turn

    def record_turn(
        self,
        guild_id: str,
        stage: TurnStage,
        *,
        turn: LatencyEntry | None = None,
        at: float | None = None,
    ) -> bool:
        """Record a pipeline boundary for *turn* (default: the current turn).

        Timestamps are epoch milliseconds. Reaching ``AUDIO_START``
        finalizes the turn and opens the bot turn. Returns False if the
        mark was rejected or there is no such session or turn.
        """
        session = self.get_session(guild_id)
        if session is None:
            return False
        turn = turn or session.current_turn
        if turn is None:
            return False
        return self._mark_stage(session, turn, stage, self._now_ms() if at is None else at)

    def abandon_turn(self, guild_id: str, turn: LatencyEntry) -> None:
        session = self.get_session(guild_id)
        if session is None:
            return
        if session.current_turn is turn:
            self._release_current_turn(session, abandoned=True)
        else:
            session.latency.abandon(turn)
        self._publish_state(session)

    def record_transcript(
        self, guild_id: str, role: TranscriptRole, text: str, subtype: TranscriptSubtype
    ) -> None:
        session = self.get_session(guild_id)
        if session is not None:
            session.add_transcript(
                TranscriptEntry(role=role, text=text, subtype=subtype, at=self._clock())
            )

    def mark_bot_audio(self, guild_id: str) -> None:
        """Note bot audio going out; opens the bot turn and restarts its silence timer."""
        session = self.get_session(guild_id)
        if session is not None:
            self._on_bot_audio(session)

    def close_bot_turn(self, guild_id: str) -> None:
        session = self.get_session(guild_id)
        if session is not None:
            self._close_bot_turn(session)

    def track_session_task(self, guild_id: str, task: asyncio.Task[Any]) -> None:
        """Tie *task* to the guild's session so ending the session cancels it."""
        session = self.get_session(guild_id)
        runtime = self._runtimes.get(session.id) if session is not None else None
        if runtime is None:
            task.cancel()
            return
        runtime.extra.add(task)
        task.add_done_callback(runtime.extra.discard)

    def _set_current_turn(self, session: Session, turn: LatencyEntry) -> None:
        if session.current_turn is not None and session.current_turn is not turn:
            self._release_current_turn(session, abandoned=True)
        session.current_turn = turn
        session.pending_transcription_turns += 1

    def _release_current_turn(self, session: Session, *, abandoned: bool) -> None:
        turn = session.current_turn
        if turn is None:
            return
        session.current_turn = None
        session.pending_transcription_turns = max(0, session.pending_transcription_turns - 1)
        if abandoned:
            session.latency.abandon(turn)
        else:
            session.latency.finalize(turn)

    def _mark_stage(self, session: Session, turn: LatencyEntry, stage: TurnStage, at: float) -> bool:
        accepted = session.latency.mark_stage(turn, stage, at)
        if accepted and stage is TurnStage.AUDIO_START:
            if session.current_turn is turn:
                self._release_current_turn(session, abandoned=False)
            else:
                session.latency.finalize(turn)
            self._on_bot_audio(session)
        self._publish_state(session)
        return accepted

    def _now_ms(self) -> float:
        return self._clock() * 1000

    # -- Bot turn --

    def _on_bot_audio(self, session: Session) -> None:
        session.last_bot_audio_at = self._clock()
        self._touch(session)
        if not session.bot_turn_open:
            session.bot_turn_open = True
            self._publish(session, MonitorEventKind.TURN_OUT, {})
            self._publish_state(session)
        runtime = self._runtimes.get(session.id)
        if runtime is None:
            return
        if runtime.silence is not None:
            runtime.silence.cancel()
        runtime.silence = self._spawn(
            self._bot_turn_silence(session), f"voice_silence:{session.guild_id}"
        )

    async def _bot_turn_silence(self, session: Session) -> None:
        await asyncio.sleep(self._config.bot_turn_silence_ms / 1000)
        runtime = self._runtimes.get(session.id)
        if runtime is not None and runtime.silence is asyncio.current_task():
            runtime.silence = None
        self._close_bot_turn(session)
        if session.connection is not None:
            session.connection.complete_active_response()

    def _close_bot_turn(self, session: Session) -> None:
        if not session.bot_turn_open:
            return
        session.bot_turn_open = False
        self._publish_state(session)

    # -- Provider events --

    async def _drain_events(self, session: Session) -> None:
        connection = session.connection
        assert connection is not None
        while not session.ending:
            event = await connection.next_event()
            try:
                await self._handle_provider_event(session, event)
            except Exception:
                logger.exception("Error handling %s for guild %s", event.type, session.guild_id)

    async def _handle_provider_event(self, session: Session, event: ProviderEvent) -> None:
        if session.ending:
            return

        if isinstance(event, AudioDelta):
            superseded = session.superseded_responses.get(event.response_id or "")
            if superseded:
                logger.debug(
                    "Dropping audio from cancelled response %s for guild %s",
                    event.response_id,
                    session.guild_id,
                )
                return
            turn = session.current_turn
            if (
                superseded is None
                and not session.awaiting_reply_request
                and turn is not None
                and not turn.finalized
            ):
                self._mark_stage(session, turn, TurnStage.AUDIO_START, self._now_ms())
            self._on_bot_audio(session)
            if self._audio_sink is not None:
                await self._audio_sink.play(session.guild_id, event.audio)

        elif isinstance(event, Transcript):
            session.add_transcript(
                TranscriptEntry(
                    role=event.role, text=event.text, subtype=event.subtype, at=self._clock()
                )
            )
            if event.role is TranscriptRole.USER:
                await self._on_user_transcript(session)
            elif event.subtype is TranscriptSubtype.AGENT:
                session.awaiting_reply_request = False
                if session.current_turn is not None:
                    self._mark_stage(
                        session, session.current_turn, TurnStage.REPLY_REQUEST, self._now_ms()
                    )

        elif isinstance(event, ResponseDone):
            stale = (
                event.response_id is not None
                and event.response_id in session.superseded_responses
            )
            if event.status is ResponseStatus.INTERRUPTED and not stale:
                self._publish(
                    session,
                    MonitorEventKind.INTERRUPTION,
                    {"response_id": event.response_id, "status": event.status.value},
                )
            turn = session.current_turn
            if (
                not stale
                and turn is not None
                and not turn.finalized
                and TurnStage.REPLY_REQUEST in turn.marks
            ):
                self._release_current_turn(session, abandoned=True)
            if event.status in _TERMINAL_INTERRUPTIONS:
                self._close_bot_turn(session)
            self._publish_state(session)

        elif isinstance(event, ProviderErrorEvent):
            logger.error(
                "Provider error for guild %s [%s] %s", session.guild_id, event.code, event.message
            )
            await self.end(session.guild_id, EndReason.PROVIDER_FATAL)

        elif isinstance(event, ConnectionClosed):
            self._publish_state(session)
            runtime = self._runtimes.get(session.id)
            if runtime is not None and (runtime.reconnect is None or runtime.reconnect.done()):
                runtime.reconnect = self._spawn(
                    self._reconnect(session), f"voice_reconnect:{session.guild_id}"
                )

    async def _on_user_transcript(self, session: Session) -> None:
        outcome = await self._coordinator.handle_user_turn(session)
        if outcome.superseded:
            self._publish(
                session,
                MonitorEventKind.INTERRUPTION,
                {"response_id": outcome.superseded_response_id, "cancelled": outcome.cancelled},
            )
            if outcome.cancelled and self._audio_sink is not None:
                await self._audio_sink.stop(session.guild_id)

        turn = session.committed_turns.popleft() if session.committed_turns else None
        if turn is None or turn.finalized:
            turn = session.latency.begin_turn(self._now_ms())
        self._set_current_turn(session, turn)
        session.latency.mark_stage(turn, TurnStage.GENERATION_START, self._now_ms())
        self._touch(session)
        self._publish(
            session, MonitorEventKind.TURN_IN, {"user_id": turn.user_id, "turn_id": turn.turn_id}
        )
        self._publish_state(session)

    async def _reconnect(self, session: Session) -> None:
        connection = session.connection
        assert connection is not None

        def _should_continue() -> bool:
            return not session.ending and self._clock() < session.max_ends_at

        config = self._session_config(session)
        try:
            attempt = await reconnect_with_backoff(
                lambda: connection.connect(config),
                self._config.reconnect,
                should_continue=_should_continue,
                label=connection.name,
            )
        except ReconnectAborted:
            if not session.ending:
                logger.warning("Provider closed past session deadline for guild %s", session.guild_id)
                await self.end(session.guild_id, EndReason.PROVIDER_FATAL)
            return
        except Exception as exc:
            logger.warning("Reconnect failed for guild %s: %s", session.guild_id, exc)
            if not session.ending:
                await self.end(session.guild_id, EndReason.PROVIDER_FATAL)
            return

        if session.ending:
            return
        session.reconnect_attempts += 1
        logger.info(
            "Provider reconnected for guild %s on attempt %d (reconnects=%d)",
            session.guild_id,
            attempt,
            session.reconnect_attempts,
        )
        self._publish_state(session, force=True)

    def _session_config(self, session: Session) -> RealtimeSessionConfig:
        return RealtimeSessionConfig(
            instructions=session.instructions,
            metadata={"guild_id": session.guild_id, "session_id": session.id},
        )

    # -- Deadlines --

    async def enforce_deadlines(self) -> list[str]:
        """End sessions past their max duration or inactivity deadline.

        Returns the guild ids that were ended.
        """
        ended: list[str] = []
        for session in list(self._sessions.values()):
            reason = self._deadline_reason(session)
            if reason is not None and await self.end(session.guild_id, reason) is not None:
                ended.append(session.guild_id)
        return ended

    def _deadline_reason(self, session: Session) -> EndReason | None:
        if session.ending:
            return None
        now = self._clock()
        if now >= session.max_ends_at:
            return EndReason.MAX_DURATION
        if now >= session.inactivity_ends_at:
            return EndReason.INACTIVITY_TIMEOUT
        return None

    async def _deadline_loop(self, session: Session) -> None:
        while not session.ending:
            reason = self._deadline_reason(session)
            if reason is not None:
                logger.info("Session deadline reached guild=%s reason=%s", session.guild_id, reason)
                await self.end(session.guild_id, reason)
                return
            remaining = min(session.max_ends_at, session.inactivity_ends_at) - self._clock()
            await asyncio.sleep(min(max(remaining, 0.05), 5.0))

    # -- Stream watch --

    def enable_stream_watch(self, guild_id: str, *, requester_id: str, target_id: str) -> WatchResult:
        session = self.get_session(guild_id)
        result = self._stream_watch.enable(session, requester_id=requester_id, target_id=target_id)
        if result.ok and session is not None:
            self._touch(session)
            self._publish_state(session, force=True)
        return result

    async def ingest_stream_frame(self, guild_id: str, frame: FramePayload) -> WatchResult:
        session = self.get_session(guild_id)
        result = await self._stream_watch.ingest_frame(session, frame)
        if result.ok and session is not None:
            self._touch(session)
        return result

    def stop_stream_watch(self, guild_id: str, reason: str = "stopped") -> bool:
        session = self.get_session(guild_id)
        stopped = self._stream_watch.stop(session, reason)
        if stopped and session is not None:
            self._publish_state(session, force=True)
        return stopped

    # -- Capability audit --

    def _on_capability_audit(self, event: CapabilityAuditEvent) -> None:
        session = self._sessions.get(event.guild_id)
        if session is None:
            return
        if event.action == "granted":
            session.capability_tokens.add(event.token_suffix)
        elif event.action == "revoked":
            session.capability_tokens.discard(event.token_suffix)
        self._publish(
            session,
            MonitorEventKind.CAPABILITY,
            {"action": event.action, "token_suffix": event.token_suffix, "reason": event.reason},
        )

    # -- Monitoring --

    def _publish_state(self, session: Session, *, force: bool = False) -> None:
        runtime = self._runtimes.get(session.id)
        if runtime is None:
            return
        state = self._coordinator.derive_state(session)
        if not force and state == runtime.last_state:
            return
        runtime.last_state = state
        snapshot = build_snapshot(session, state)
        payload = {"snapshot": snapshot.model_dump(mode="json")}
        self._publish(session, MonitorEventKind.SNAPSHOT, payload)

    def _publish(self, session: Session, kind: MonitorEventKind, data: dict[str, Any]) -> None:
        if self._monitor is None:
            return
        self._outbox.put_nowait(
            MonitorEvent(guild_id=session.guild_id, kind=kind, session_id=session.id, data=data)
        )
        if self._publisher is None or self._publisher.done():
            self._publisher = self._spawn(self._publish_loop(), "voice_monitor_publisher")

    async def _publish_loop(self) -> None:
        monitor = self._monitor
        assert monitor is not None
        while True:
            event = await self._outbox.get()
            try:
                await monitor.publish(event)
            except Exception:
                logger.exception("Failed to publish %s for guild %s", event.kind, event.guild_id)
            finally:
                self._outbox.task_done()

    @staticmethod
    def _spawn(coro: Any, name: str) -> asyncio.Task[Any]:
        return asyncio.create_task(coro, name=name)
