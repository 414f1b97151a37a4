"""ElevenLabs Conversational AI realtime client."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Any

import httpx

from guildvoice.errors import ConfigurationError, ProviderConnectError
from guildvoice.models.enums import ResponseStatus, SessionMode, TranscriptRole, TranscriptSubtype
from guildvoice.providers.elevenlabs.config import ElevenLabsRealtimeConfig
from guildvoice.realtime.events import AudioDelta, ProviderErrorEvent, ResponseDone, Transcript
from guildvoice.realtime.provider import RealtimeSessionConfig, clamp_sample_rate
from guildvoice.realtime.websocket import WebSocketProtocolClient

logger = logging.getLogger("guildvoice.providers.elevenlabs.realtime")

_SIGNED_URL_PATH = "/v1/convai/conversation/get-signed-url"
_PCM_FORMAT = re.compile(r"^pcm_(\d{4,6})$")


def parse_pcm_rate(audio_format: Any) -> int | None:
    """Read the sample rate from an ElevenLabs format string like ``pcm_16000``."""
    match = _PCM_FORMAT.match(str(audio_format or "").strip().lower())
    if match is None:
        return None
    return clamp_sample_rate(match.group(1))


class ElevenLabsRealtimeClient(WebSocketProtocolClient):
    """Protocol client for ElevenLabs Conversational AI agents.

    Connecting is two steps: a signed socket URL is fetched over HTTPS
    with the API key, then the socket is opened and the conversation
    initiation message is sent. :meth:`connect` returns once the
    ``conversation_initiation_metadata`` acknowledgement has arrived.

    Input audio is buffered by :meth:`append_input_audio` and sent as one
    ``user_audio_chunk`` message per appended chunk on commit. ElevenLabs
    has no response cancellation; barge-in is detected server side and
    reported as an ``interruption`` message.

    Example:
        client = ElevenLabsRealtimeClient(
            ElevenLabsRealtimeConfig(api_key="xi-...", agent_id="agent_123")
        )
        await client.connect(RealtimeSessionConfig(instructions="Keep it short."))
    """

    mode = SessionMode.ELEVENLABS_REALTIME
    supports_cancellation = False

    def __init__(
        self,
        config: ElevenLabsRealtimeConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self._config = config
        self._http = http_client
        self._ack = asyncio.Event()

    @property
    def name(self) -> str:
        return "elevenlabs_realtime"

    async def connect(self, session_config: RealtimeSessionConfig) -> None:
        if not self._config.api_key.get_secret_value().strip():
            raise ConfigurationError("ElevenLabs API key is required")
        if not self._config.agent_id.strip():
            raise ConfigurationError("ElevenLabs agent_id is required")

        signed_url = await self._fetch_signed_url()
        self._ack = asyncio.Event()
        await self._open_socket(signed_url)
        await self.send_event(self._build_initiation(session_config))

        try:
            async with asyncio.timeout(self.connect_timeout):
                await self._ack.wait()
        except TimeoutError as exc:
            await self.close()
            raise ProviderConnectError(
                "ElevenLabs did not acknowledge conversation initiation",
                provider=self.name,
            ) from exc

        if not self.state.connected:
            raise ProviderConnectError(
                "ElevenLabs socket closed during handshake",
                provider=self.name,
                diagnostics={
                    "close_code": self.state.last_close_code,
                    "close_reason": self.state.last_close_reason,
                },
            )

        logger.info(
            "ElevenLabs session connected: conversation=%s in=%dHz out=%dHz",
            self.state.session_id,
            self.state.input_sample_rate,
            self.state.output_sample_rate,
        )

    async def _fetch_signed_url(self) -> str:
        url = f"{self._config.base_url.rstrip('/')}{_SIGNED_URL_PATH}"
        params = {"agent_id": self._config.agent_id.strip()}
        headers = {"xi-api-key": self._config.api_key.get_secret_value()}
        try:
            if self._http is not None:
                response = await self._http.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._config.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderConnectError(
                f"ElevenLabs signed URL request failed ({exc.response.status_code})",
                provider=self.name,
                status_code=exc.response.status_code,
                diagnostics={"url": url},
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderConnectError(
                f"Failed to fetch ElevenLabs signed URL: {type(exc).__name__}",
                provider=self.name,
                diagnostics={"url": url},
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderConnectError(
                "ElevenLabs signed URL response was not JSON", provider=self.name
            ) from exc
        signed_url = str(payload.get("signed_url") or "").strip() if isinstance(payload, dict) else ""
        if not signed_url:
            raise ProviderConnectError(
                "ElevenLabs signed URL response did not include signed_url",
                provider=self.name,
            )
        return signed_url

    @staticmethod
    def _build_initiation(session_config: RealtimeSessionConfig) -> dict[str, Any]:
        initiation: dict[str, Any] = {"type": "conversation_initiation_client_data"}
        instructions = session_config.instructions.strip()
        if instructions:
            initiation["conversation_config_override"] = {
                "agent": {"prompt": {"prompt": instructions}}
            }
        return initiation

    # -- Outbound --

    async def commit_input_audio(self) -> None:
        chunks = self._pending_input_audio
        self._pending_input_audio = []
        for chunk in chunks:
            await self.send_event({"user_audio_chunk": chunk})

    async def request_response(self) -> None:
        await self.send_event({"type": "user_activity"})

    async def request_text_utterance(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        await self.send_event({"type": "user_message", "text": text})

    # -- Inbound --

    def _on_socket_closed(self) -> None:
        self._ack.set()

    async def _handle_server_event(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("type") or "").strip().lower()

        if event_type == "conversation_initiation_metadata":
            metadata = event.get("conversation_initiation_metadata_event")
            if not isinstance(metadata, dict):
                metadata = event.get("conversation_initiation_metadata")
            if not isinstance(metadata, dict):
                metadata = {}
            conversation_id = str(metadata.get("conversation_id") or "").strip()
            if conversation_id:
                self.state.session_id = conversation_id
            input_rate = parse_pcm_rate(metadata.get("user_input_audio_format"))
            output_rate = parse_pcm_rate(metadata.get("agent_output_audio_format"))
            if input_rate:
                self.state.input_sample_rate = input_rate
            if output_rate:
                self.state.output_sample_rate = output_rate
            logger.info(
                "ElevenLabs conversation initiated: %s (input=%s output=%s)",
                conversation_id or "-",
                metadata.get("user_input_audio_format"),
                metadata.get("agent_output_audio_format"),
            )
            self._mark_established()
            self._ack.set()

        elif event_type == "audio":
            audio_event = event.get("audio_event") or {}
            audio_b64 = str(audio_event.get("audio_base_64") or "").strip()
            if not audio_b64:
                return
            try:
                audio = base64.b64decode(audio_b64, validate=True)
            except (binascii.Error, ValueError):
                logger.warning("Undecodable ElevenLabs audio chunk dropped")
                return
            response_id = self._open_response()
            self.state.active_response_has_audio = True
            self._emit(AudioDelta(audio=audio, response_id=response_id))

        elif event_type == "user_transcript":
            text = str((event.get("user_transcription_event") or {}).get("user_transcript") or "")
            if text.strip():
                self._emit(
                    Transcript(
                        role=TranscriptRole.USER,
                        text=text.strip(),
                        subtype=TranscriptSubtype.USER,
                    )
                )

        elif event_type == "agent_response":
            text = str((event.get("agent_response_event") or {}).get("agent_response") or "")
            if text.strip():
                self._open_response()
                self.state.last_agent_transcript = text.strip()
                self._emit(
                    Transcript(
                        role=TranscriptRole.ASSISTANT,
                        text=text.strip(),
                        subtype=TranscriptSubtype.AGENT,
                    )
                )

        elif event_type == "agent_response_correction":
            correction = event.get("agent_response_correction_event") or {}
            text = str(correction.get("corrected_agent_response") or "")
            if text.strip():
                self.state.last_agent_transcript = text.strip()
                self._emit(
                    Transcript(
                        role=TranscriptRole.ASSISTANT,
                        text=text.strip(),
                        subtype=TranscriptSubtype.AGENT_CORRECTION,
                    )
                )

        elif event_type == "ping":
            event_id = (event.get("ping_event") or {}).get("event_id")
            if event_id is not None and str(event_id).strip():
                await self.send_event({"type": "pong", "event_id": event_id})

        elif event_type == "interruption":
            response_id = self.state.active_response_id
            self.state.reply_superseded_count += 1
            self._clear_active_response()
            logger.info("ElevenLabs interruption (superseded=%d)", self.state.reply_superseded_count)
            self._emit(ResponseDone(status=ResponseStatus.INTERRUPTED, response_id=response_id))

        elif event_type == "error" or event.get("error"):
            details = event.get("error") if isinstance(event.get("error"), dict) else {}
            message = str(
                details.get("message")
                or details.get("code")
                or event.get("message")
                or "Unknown ElevenLabs realtime error"
            )
            code = str(details.get("code") or "unknown")
            self.state.last_error = message
            logger.warning(
                "ElevenLabs error [%s] %s (last outbound=%s)",
                code,
                message,
                self.state.last_outbound_event_type,
            )
            self._emit(ProviderErrorEvent(code=code, message=message))

        else:
            logger.debug("Ignoring ElevenLabs event %s", event_type or "<untyped>")
