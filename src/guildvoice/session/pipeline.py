"""Segmented capture -> transcribe -> generate -> speak pipeline."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from guildvoice.errors import SessionNotFoundError
from guildvoice.models.enums import TranscriptRole, TranscriptSubtype, TurnStage
from guildvoice.session.latency import LatencyEntry

if TYPE_CHECKING:
    from guildvoice.session.manager import VoiceSessionManager

logger = logging.getLogger("guildvoice.session.pipeline")


@dataclass(frozen=True)
class CapturedUtterance:
    """A complete user utterance handed over by the capture layer."""

    user_id: str
    audio: bytes
    sample_rate: int = 16000
    turn: LatencyEntry | None = field(default=None, compare=False)


class AudioSink(ABC):
    """Where agent audio goes (the voice connection's playback queue)."""

    @abstractmethod
    async def play(self, guild_id: str, audio: bytes) -> None:
        """Queue *audio* for playback in *guild_id*'s voice channel."""
        ...

    async def stop(self, guild_id: str) -> None:  # noqa: B027
        """Drop queued playback. Override where the transport supports it."""


class TranscriptionBackend(ABC):
    """Speech-to-text for segmented sessions."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def transcribe(self, utterance: CapturedUtterance) -> str:
        """Return the utterance text, or an empty string for silence/noise."""
        ...


class ReplyGenerator(ABC):
    """Produces the persona's reply text for a user turn."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def generate(self, guild_id: str, user_id: str, transcript: str) -> str:
        """Return reply text, or an empty string to stay quiet."""
        ...


class SpeechSynthesizer(ABC):
    """Text-to-speech for segmented sessions."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield PCM chunks as they are synthesized."""
        ...


@dataclass
class SegmentedPipeline:
    transcriber: TranscriptionBackend
    generator: ReplyGenerator
    synthesizer: SpeechSynthesizer
    sink: AudioSink


class SegmentedTurnRunner:
    """Runs segmented turns for every session, one turn at a time per guild.

    Utterances submitted while a turn is in progress wait in a per-guild
    queue and are counted in the session's ``pending_deferred_turns``.
    Each stage boundary is recorded through the session manager, which
    maintains the latency entry and the bot state.
    """

    def __init__(self, manager: VoiceSessionManager, pipeline: SegmentedPipeline) -> None:
        self._manager = manager
        self._pipeline = pipeline
        self._queues: dict[str, asyncio.Queue[CapturedUtterance]] = {}

    def submit(self, guild_id: str, utterance: CapturedUtterance) -> None:
        """Queue *utterance* for *guild_id*'s session.

        Raises:
            SessionNotFoundError: No live session for the guild.
        """
        session = self._manager.require_session(guild_id)
        queue = self._queues.get(session.id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[session.id] = queue
            self._manager.track_session_task(
                guild_id,
                asyncio.create_task(
                    self._worker(guild_id, session.id, queue), name=f"segmented:{guild_id}"
                ),
            )
        queue.put_nowait(utterance)
        session.pending_deferred_turns = queue.qsize()

    async def _worker(
        self, guild_id: str, session_id: str, queue: asyncio.Queue[CapturedUtterance]
    ) -> None:
        try:
            while True:
                utterance = await queue.get()
                session = self._manager.get_session(guild_id)
                if session is None or session.id != session_id:
                    return
                session.pending_deferred_turns = queue.qsize()
                try:
                    await self._run_turn(guild_id, utterance)
                except SessionNotFoundError:
                    return
                except Exception:
                    logger.exception("Segmented turn failed for guild %s", guild_id)
                    self._manager.close_bot_turn(guild_id)
        finally:
            self._queues.pop(session_id, None)

    async def _run_turn(self, guild_id: str, utterance: CapturedUtterance) -> None:
        manager = self._manager
        turn = manager.begin_turn(guild_id, utterance.user_id, turn=utterance.turn)
        try:
            manager.record_turn(guild_id, TurnStage.TRANSCRIPTION_START, turn=turn)
            text = (await self._pipeline.transcriber.transcribe(utterance)).strip()
            if not text:
                manager.abandon_turn(guild_id, turn)
                return
            manager.record_transcript(guild_id, TranscriptRole.USER, text, TranscriptSubtype.USER)

            manager.record_turn(guild_id, TurnStage.GENERATION_START, turn=turn)
            generated = await self._pipeline.generator.generate(guild_id, utterance.user_id, text)
            reply = generated.strip()
            if not reply:
                manager.abandon_turn(guild_id, turn)
                return
            manager.record_transcript(
                guild_id, TranscriptRole.ASSISTANT, reply, TranscriptSubtype.AGENT
            )

            manager.record_turn(guild_id, TurnStage.REPLY_REQUEST, turn=turn)
            async for chunk in self._pipeline.synthesizer.synthesize_stream(reply):
                if not chunk:
                    continue
                if not turn.finalized:
                    manager.record_turn(guild_id, TurnStage.AUDIO_START, turn=turn)
                manager.mark_bot_audio(guild_id)
                await self._pipeline.sink.play(guild_id, chunk)
        finally:
            if not turn.finalized:
                manager.abandon_turn(guild_id, turn)
            manager.close_bot_turn(guild_id)
