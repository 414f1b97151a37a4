"""Gemini Live API client for speech-to-speech sessions with screen frames."""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
from datetime import UTC, datetime
from typing import Any

from websockets.exceptions import ConnectionClosed as SocketClosed

from guildvoice.errors import ConfigurationError, ProviderConnectError, ProviderNotConnectedError
from guildvoice.models.enums import ResponseStatus, SessionMode, TranscriptRole, TranscriptSubtype
from guildvoice.providers.gemini.config import GeminiRealtimeConfig
from guildvoice.realtime.events import AudioDelta, ConnectionClosed, ResponseDone, Transcript
from guildvoice.realtime.provider import (
    ProviderProtocolClient,
    RealtimeSessionConfig,
    clamp_sample_rate,
)
from guildvoice.realtime.websocket import DEFAULT_CONNECT_TIMEOUT

logger = logging.getLogger("guildvoice.providers.gemini.realtime")

DEFAULT_OUTPUT_SAMPLE_RATE = 24000

_TRANSCRIPT_SUBTYPES = {
    TranscriptRole.USER: TranscriptSubtype.USER,
    TranscriptRole.ASSISTANT: TranscriptSubtype.AGENT,
}


class _GoAway(Exception):
    """The server announced it is about to drop the stream."""


def _load_sdk() -> tuple[Any, Any]:
    try:
        from google import genai
        from google.genai import types
    except ImportError as exc:
        raise ImportError(
            "google-genai is required for GeminiRealtimeClient. "
            "Install with: pip install 'guildvoice[gemini]'"
        ) from exc
    return genai, types


def _rate_from_mime(mime_type: str | None) -> int | None:
    # "audio/pcm;rate=24000"
    for param in (mime_type or "").split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key == "rate":
            return clamp_sample_rate(value, DEFAULT_OUTPUT_SAMPLE_RATE)
    return None


class GeminiRealtimeClient(ProviderProtocolClient):
    """Protocol client for the Gemini Live API.

    Automatic activity detection is turned off: the first appended chunk
    of an utterance opens an activity and :meth:`commit_input_audio`
    closes it, after which the model answers on its own. Screen frames are
    streamed as realtime video input and can be commented on with
    :meth:`request_video_commentary`.

    Gemini has no cancel primitive and no response ids. Each model
    generation gets a local id that stays on its audio until the server
    reports ``interrupted`` or ``turn_complete``, so late audio from a
    superseded generation is still recognisable.

    Requires the ``google-genai`` package.

    Example:
        client = GeminiRealtimeClient(GeminiRealtimeConfig(api_key="..."))
        await client.connect(RealtimeSessionConfig(instructions="Keep it short."))
        await client.append_input_audio(pcm_bytes)
        await client.commit_input_audio()
    """

    mode = SessionMode.GEMINI_REALTIME
    supports_video_input = True
    native_response_ids = True
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def __init__(self, config: GeminiRealtimeConfig, *, client: Any = None) -> None:
        super().__init__()
        self._config = config
        self._client = client
        self._types: Any = None
        self._ctxmgr: Any = None
        self._live: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._closing = False
        self._activity_open = False
        self._generation_id: str | None = None
        self._transcript_chunks: dict[TranscriptRole, list[str]] = {}

    @property
    def name(self) -> str:
        return "gemini_realtime"

    async def connect(self, session_config: RealtimeSessionConfig) -> None:
        api_key = self._config.api_key.get_secret_value().strip()
        if not api_key:
            raise ConfigurationError("Gemini API key is required")

        genai, types = _load_sdk()
        self._types = types
        if self._client is None:
            # Tighter keepalive than the SDK default to notice dead sockets sooner.
            self._client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(
                    async_client_args={"ping_interval": 10, "ping_timeout": 5}
                ),
            )

        await self._teardown()
        voice = session_config.voice or self._config.voice
        instructions = session_config.instructions.strip()
        live_config = types.LiveConnectConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice)
                )
            ),
            system_instruction=instructions or None,
            realtime_input_config=types.RealtimeInputConfig(
                automatic_activity_detection=types.AutomaticActivityDetection(disabled=True)
            ),
            input_audio_transcription=types.AudioTranscriptionConfig(),
            output_audio_transcription=types.AudioTranscriptionConfig(),
        )

        self._closing = False
        ctxmgr = self._client.aio.live.connect(model=self._config.model, config=live_config)
        try:
            async with asyncio.timeout(self.connect_timeout):
                live = await ctxmgr.__aenter__()
        except Exception as exc:
            raise ProviderConnectError(
                f"{self.name} connect failed: {type(exc).__name__}",
                provider=self.name,
                diagnostics={"model": self._config.model},
            ) from exc

        self._ctxmgr = ctxmgr
        self._live = live
        self._activity_open = False
        self._generation_id = None
        self._transcript_chunks.clear()
        self._pending_input_audio.clear()
        self.state.connected = True
        self.state.connected_at = datetime.now(UTC)
        self.state.last_close_code = None
        self.state.last_close_reason = None
        self.state.input_sample_rate = clamp_sample_rate(session_config.input_sample_rate)
        self.state.output_sample_rate = DEFAULT_OUTPUT_SAMPLE_RATE
        self._record_outbound({"type": "setup", "model": self._config.model, "voice": voice})
        self._receive_task = asyncio.create_task(
            self._receive_loop(live), name=f"gemini_live_recv:{self._config.model}"
        )
        logger.info("Gemini Live session connected (model=%s)", self._config.model)

    # -- Outbound --

    async def append_input_audio(self, audio: bytes | str) -> None:
        self._require_live()
        data = self._decode(audio)
        if not data:
            return
        if not self._activity_open:
            await self._send_realtime("activity_start", activity_start=self._types.ActivityStart())
            self._activity_open = True
        mime_type = f"audio/pcm;rate={self.state.input_sample_rate}"
        await self._send_realtime(
            "audio", audio=self._types.Blob(data=data, mime_type=mime_type), size=len(data)
        )

    async def commit_input_audio(self) -> None:
        if not self._activity_open:
            return
        await self._send_realtime("activity_end", activity_end=self._types.ActivityEnd())
        self._activity_open = False

    async def request_response(self) -> None:
        # The model answers every closed activity; there is nothing to send.
        self._require_connected()

    async def request_text_utterance(self, text: str) -> None:
        await self._send_user_text("text_utterance", text)

    async def append_input_video_frame(self, mime_type: str, data_base64: str) -> bool:
        self._require_live()
        data = self._decode(data_base64.strip())
        if not data:
            return False
        await self._send_realtime(
            "video",
            video=self._types.Blob(data=data, mime_type=mime_type.strip() or "image/jpeg"),
            size=len(data),
        )
        return True

    async def request_video_commentary(self, prompt: str) -> bool:
        return await self._send_user_text("video_commentary", prompt)

    async def close(self) -> None:
        self._closing = True
        await self._teardown()
        self.state.connected = False
        self._activity_open = False
        self._generation_id = None
        self._transcript_chunks.clear()
        self._pending_input_audio.clear()
        self._clear_active_response()
        logger.debug("%s closed", self.name)

    def _decode(self, audio: bytes | str) -> bytes:
        if isinstance(audio, bytes):
            return audio
        try:
            return base64.b64decode(audio, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Undecodable base64 payload for %s dropped", self.name)
            return b""

    def _require_live(self) -> Any:
        self._require_connected()
        if self._live is None:
            raise ProviderNotConnectedError(f"{self.name} socket is not open")
        return self._live

    async def _send_realtime(self, kind: str, *, size: int | None = None, **payload: Any) -> None:
        live = self._require_live()
        try:
            await live.send_realtime_input(**payload)
        except SocketClosed as exc:
            raise ProviderNotConnectedError(f"{self.name} socket is not open") from exc
        self._record_outbound({"type": f"realtime_input.{kind}", "bytes": size})

    async def _send_user_text(self, kind: str, text: str) -> bool:
        text = text.strip()
        if not text:
            return False
        live = self._require_live()
        types = self._types
        try:
            await live.send_client_content(
                turns=types.Content(role="user", parts=[types.Part(text=text)]),
                turn_complete=True,
            )
        except SocketClosed as exc:
            raise ProviderNotConnectedError(f"{self.name} socket is not open") from exc
        self._record_outbound({"type": f"client_content.{kind}", "text": text})
        return True

    async def _teardown(self) -> None:
        task = self._receive_task
        self._receive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        ctxmgr = self._ctxmgr
        self._ctxmgr = None
        self._live = None
        if ctxmgr is not None:
            with contextlib.suppress(Exception):
                await ctxmgr.__aexit__(None, None, None)

    # -- Inbound --

    async def _receive_loop(self, live: Any) -> None:
        """Read server messages until the stream ends.

        ``live.receive()`` yields the messages of one model turn, so it is
        called again after every turn. A call that yields nothing means the
        stream is closed.
        """
        reason = "stream ended"
        try:
            while not self._closing:
                received = 0
                async for message in live.receive():
                    received += 1
                    try:
                        go_away = self._handle_message(message)
                    except Exception:
                        logger.exception("Error handling %s message", self.name)
                        continue
                    if go_away is not None:
                        raise _GoAway(go_away)
                if received == 0:
                    break
        except asyncio.CancelledError:
            raise
        except _GoAway as exc:
            reason = f"go_away time_left={exc}"
        except Exception as exc:
            if not self._closing:
                logger.warning("%s stream error: %s", self.name, exc)
                reason = type(exc).__name__

        if not self._closing:
            self._handle_stream_end(reason)

    def _handle_stream_end(self, reason: str) -> None:
        if not self.state.connected:
            return
        self.state.connected = False
        self.state.last_close_reason = reason
        self._live = None
        self._activity_open = False
        self._pending_input_audio.clear()
        self._transcript_chunks.clear()
        logger.warning("%s stream closed: %s", self.name, reason)

        generation = self._generation_id
        self._generation_id = None
        if generation is not None:
            if self.state.active_response_id == generation:
                self._clear_active_response()
            self._emit(ResponseDone(status=ResponseStatus.INTERRUPTED, response_id=generation))
        self._emit(ConnectionClosed(code=None, reason=reason))

    def _handle_message(self, message: Any) -> str | None:
        """Map one server message to events. Returns the go-away notice, if any."""
        content = getattr(message, "server_content", None)
        if content is not None:
            self._handle_server_content(content)

        go_away = getattr(message, "go_away", None)
        if go_away:
            time_left = str(getattr(go_away, "time_left", None) or "unknown")
            logger.warning("Gemini GoAway received (time_left=%s)", time_left)
            return time_left
        return None

    def _handle_server_content(self, content: Any) -> None:
        self._collect_transcript(TranscriptRole.USER, getattr(content, "input_transcription", None))

        model_turn = getattr(content, "model_turn", None)
        if model_turn is not None:
            # The model answering means the user's words are complete.
            self._flush_transcript(TranscriptRole.USER)
            for part in getattr(model_turn, "parts", None) or []:
                blob = getattr(part, "inline_data", None)
                if blob is not None and getattr(blob, "data", None):
                    self._on_audio(blob)

        self._collect_transcript(
            TranscriptRole.ASSISTANT, getattr(content, "output_transcription", None)
        )

        if getattr(content, "interrupted", None):
            self._flush_transcript(TranscriptRole.ASSISTANT)
            self.state.reply_superseded_count += 1
            logger.info("Gemini interrupted (superseded=%d)", self.state.reply_superseded_count)
            self._end_generation(ResponseStatus.INTERRUPTED, always=True)
        elif getattr(content, "turn_complete", None) or getattr(
            content, "generation_complete", None
        ):
            self._flush_transcript(TranscriptRole.USER)
            self._flush_transcript(TranscriptRole.ASSISTANT)
            self._end_generation(ResponseStatus.COMPLETED)

    def _on_audio(self, blob: Any) -> None:
        if self._generation_id is None:
            self._generation_id = self._open_response()
        if self._generation_id == self.state.active_response_id:
            self.state.active_response_has_audio = True
        rate = _rate_from_mime(getattr(blob, "mime_type", None))
        if rate is not None:
            self.state.output_sample_rate = rate
        data = blob.data
        if isinstance(data, str):
            data = self._decode(data)
        self._emit(AudioDelta(audio=bytes(data), response_id=self._generation_id))

    def _end_generation(self, status: ResponseStatus, *, always: bool = False) -> None:
        generation = self._generation_id
        self._generation_id = None
        if generation is None and not always:
            return
        if generation is not None and self.state.active_response_id == generation:
            self._clear_active_response()
        logger.info("Gemini response_done status=%s id=%s", status, generation)
        self._emit(ResponseDone(status=status, response_id=generation))

    def _collect_transcript(self, role: TranscriptRole, transcription: Any) -> None:
        text = getattr(transcription, "text", None) if transcription is not None else None
        if not text:
            return
        self._transcript_chunks.setdefault(role, []).append(text)
        if getattr(transcription, "finished", None):
            self._flush_transcript(role)

    def _flush_transcript(self, role: TranscriptRole) -> None:
        text = "".join(self._transcript_chunks.pop(role, [])).strip()
        if not text:
            return
        if role is TranscriptRole.ASSISTANT:
            self.state.last_agent_transcript = text
        self._emit(Transcript(role=role, text=text, subtype=_TRANSCRIPT_SUBTYPES[role]))
