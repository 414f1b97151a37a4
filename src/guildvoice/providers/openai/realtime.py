"""OpenAI Realtime API client for speech-to-speech sessions."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any

from guildvoice.errors import ConfigurationError, ProviderConnectError
from guildvoice.models.enums import ResponseStatus, SessionMode, TranscriptRole, TranscriptSubtype
from guildvoice.providers.openai.config import OpenAIRealtimeConfig
from guildvoice.realtime.events import AudioDelta, ProviderErrorEvent, ResponseDone, Transcript
from guildvoice.realtime.provider import RealtimeSessionConfig, encode_audio
from guildvoice.realtime.websocket import WebSocketProtocolClient

logger = logging.getLogger("guildvoice.providers.openai.realtime")

# pcm16 is fixed at 24 kHz; the G.711 formats at 8 kHz.
_FORMAT_RATES = {"pcm16": 24000, "g711_ulaw": 8000, "g711_alaw": 8000}

_AUDIO_DELTA_TYPES = frozenset({"response.audio.delta", "response.output_audio.delta"})
_AGENT_TRANSCRIPT_TYPES = frozenset(
    {"response.audio_transcript.done", "response.output_audio_transcript.done"}
)

_STATUS_MAP = {
    "completed": ResponseStatus.COMPLETED,
    "cancelled": ResponseStatus.CANCELLED,
    "failed": ResponseStatus.FAILED,
    "incomplete": ResponseStatus.INTERRUPTED,
}

# Errors caused by racing a cancel against a response that already ended.
_BENIGN_ERROR_CODES = frozenset({"response_cancel_not_active"})


class OpenAIRealtimeClient(WebSocketProtocolClient):
    """Protocol client for the OpenAI Realtime API.

    Turn detection is disabled so the session drives commit and response
    creation explicitly. Unlike ElevenLabs, in-flight responses can be
    cancelled with ``response.cancel``.

    Example:
        client = OpenAIRealtimeClient(OpenAIRealtimeConfig(api_key="sk-..."))
        await client.connect(RealtimeSessionConfig(instructions="You are helpful."))
        await client.append_input_audio(pcm_bytes)
    """

    mode = SessionMode.OPENAI_REALTIME
    supports_cancellation = True
    native_response_ids = True

    def __init__(self, config: OpenAIRealtimeConfig) -> None:
        super().__init__()
        self._config = config
        self._ack = asyncio.Event()

    @property
    def name(self) -> str:
        return "openai_realtime"

    async def connect(self, session_config: RealtimeSessionConfig) -> None:
        api_key = self._config.api_key.get_secret_value().strip()
        if not api_key:
            raise ConfigurationError("OpenAI API key is required")

        url = f"{self._config.base_url}?model={self._config.model}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        self._ack = asyncio.Event()
        await self._open_socket(url, headers)

        session: dict[str, Any] = {
            "modalities": ["text", "audio"],
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": self._config.transcription_model},
            "voice": session_config.voice or self._config.voice,
            "turn_detection": None,
        }
        if session_config.instructions.strip():
            session["instructions"] = session_config.instructions.strip()
        await self.send_event({"type": "session.update", "session": session})

        try:
            async with asyncio.timeout(self.connect_timeout):
                await self._ack.wait()
        except TimeoutError as exc:
            await self.close()
            raise ProviderConnectError(
                "OpenAI did not acknowledge session.update", provider=self.name
            ) from exc

        if not self.state.connected:
            raise ProviderConnectError(
                "OpenAI socket closed during handshake",
                provider=self.name,
                diagnostics={
                    "close_code": self.state.last_close_code,
                    "close_reason": self.state.last_close_reason,
                },
            )
        logger.info("OpenAI Realtime session connected: %s", self.state.session_id)

    # -- Outbound --

    async def append_input_audio(self, audio: bytes | str) -> None:
        await self.send_event({"type": "input_audio_buffer.append", "audio": encode_audio(audio)})

    async def commit_input_audio(self) -> None:
        await self.send_event({"type": "input_audio_buffer.commit"})

    async def request_response(self) -> None:
        await self.send_event({"type": "response.create"})

    async def cancel_active_response(self) -> bool:
        if self.state.active_response_id is None or not self.state.connected:
            return False
        await self.send_event({"type": "response.cancel"})
        return True

    async def request_text_utterance(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        await self.send_event(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": text}],
                },
            }
        )
        await self.request_response()

    # -- Inbound --

    def _on_socket_closed(self) -> None:
        self._ack.set()

    def _apply_session(self, session: dict[str, Any]) -> None:
        if session.get("id"):
            self.state.session_id = str(session["id"])
        input_rate = _FORMAT_RATES.get(str(session.get("input_audio_format") or ""))
        output_rate = _FORMAT_RATES.get(str(session.get("output_audio_format") or ""))
        if input_rate:
            self.state.input_sample_rate = input_rate
        if output_rate:
            self.state.output_sample_rate = output_rate

    async def _handle_server_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type", "")

        if event_type == "session.created":
            self._apply_session(event.get("session") or {})

        elif event_type == "session.updated":
            self._apply_session(event.get("session") or {})
            self._mark_established()
            self._ack.set()

        elif event_type == "response.created":
            response = event.get("response") or {}
            self._open_response(response.get("id") or None)

        elif event_type in _AUDIO_DELTA_TYPES:
            audio_b64 = event.get("delta", "")
            if not audio_b64:
                return
            try:
                audio = base64.b64decode(audio_b64, validate=True)
            except (binascii.Error, ValueError):
                logger.warning("Undecodable OpenAI audio delta dropped")
                return
            response_id = event.get("response_id") or self._open_response()
            if response_id == self.state.active_response_id:
                self.state.active_response_has_audio = True
            self._emit(AudioDelta(audio=audio, response_id=response_id))

        elif event_type == "conversation.item.input_audio_transcription.completed":
            text = str(event.get("transcript") or "").strip()
            if text:
                self._emit(
                    Transcript(role=TranscriptRole.USER, text=text, subtype=TranscriptSubtype.USER)
                )

        elif event_type in _AGENT_TRANSCRIPT_TYPES:
            text = str(event.get("transcript") or "").strip()
            if text:
                self.state.last_agent_transcript = text
                self._emit(
                    Transcript(
                        role=TranscriptRole.ASSISTANT, text=text, subtype=TranscriptSubtype.AGENT
                    )
                )

        elif event_type == "response.done":
            response = event.get("response") or {}
            response_id = response.get("id") or None
            raw_status = str(response.get("status") or "completed")
            status = _STATUS_MAP.get(raw_status, ResponseStatus.COMPLETED)
            if status is ResponseStatus.FAILED:
                error = (response.get("status_details") or {}).get("error") or {}
                self.state.last_error = str(error.get("message") or "response failed")
                logger.error("OpenAI response failed: %s", self.state.last_error)
            if response_id is None or response_id == self.state.active_response_id:
                self._clear_active_response()
            logger.info("OpenAI response_done status=%s id=%s", status, response_id)
            self._emit(ResponseDone(status=status, response_id=response_id))

        elif event_type == "error":
            error = event.get("error") or {}
            code = str(error.get("code") or "unknown")
            message = str(error.get("message") or "Unknown error")
            if code in _BENIGN_ERROR_CODES:
                logger.debug("OpenAI ignored benign error [%s] %s", code, message)
                return
            self.state.last_error = message
            logger.error("OpenAI error [%s] %s", code, message)
            self._emit(ProviderErrorEvent(code=code, message=message))

        else:
            logger.debug("Ignoring OpenAI event %s", event_type)
