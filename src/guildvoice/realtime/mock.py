"""Mock provider protocol client for testing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from guildvoice.errors import ProviderConnectError
from guildvoice.models.enums import ResponseStatus, SessionMode, TranscriptRole, TranscriptSubtype
from guildvoice.realtime.events import (
    AudioDelta,
    ConnectionClosed,
    ProviderErrorEvent,
    ResponseDone,
    Transcript,
)
from guildvoice.realtime.provider import ProviderProtocolClient, RealtimeSessionConfig


@dataclass
class MockCall:
    """Record of a method call for test assertions."""

    method: str
    args: dict[str, Any] = field(default_factory=dict)


class MockProtocolClient(ProviderProtocolClient):
    """Mock provider client for testing.

    Tracks all method calls and provides helpers to simulate provider
    events. ``fail_connects`` makes the next N connect attempts raise.

    Example:
        client = MockProtocolClient()
        await client.connect(RealtimeSessionConfig(instructions="hi"))
        assert client.calls[-1].method == "connect"

        client.simulate_transcript("hello", role=TranscriptRole.USER)
        client.simulate_audio(b"pcm")
    """

    def __init__(
        self,
        *,
        mode: SessionMode = SessionMode.ELEVENLABS_REALTIME,
        supports_cancellation: bool = False,
        native_response_ids: bool | None = None,
        fail_connects: int = 0,
    ) -> None:
        super().__init__()
        self.mode = mode
        self.supports_cancellation = supports_cancellation
        self.native_response_ids = (
            supports_cancellation if native_response_ids is None else native_response_ids
        )
        self.fail_connects = fail_connects
        self.calls: list[MockCall] = []
        self.committed_audio: list[list[str]] = []
        self.session_configs: list[RealtimeSessionConfig] = []
        self.video_frames: list[tuple[str, str]] = []
        self.commentary_prompts: list[str] = []
        self.accept_video = False

    @property
    def name(self) -> str:
        return "mock_realtime"

    def methods(self) -> list[str]:
        return [call.method for call in self.calls]

    async def connect(self, session_config: RealtimeSessionConfig) -> None:
        self.calls.append(
            MockCall(method="connect", args={"instructions": session_config.instructions})
        )
        self.session_configs.append(session_config)
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ProviderConnectError("mock connect failure", provider=self.name)
        self.state.connected = True
        self.state.connected_at = datetime.now(UTC)
        self.state.session_id = f"mock-session-{len(self.session_configs)}"
        self.state.last_close_code = None
        self.state.last_close_reason = None

    async def append_input_audio(self, audio: bytes | str) -> None:
        await super().append_input_audio(audio)
        chunks = len(self._pending_input_audio)
        self.calls.append(MockCall(method="append_input_audio", args={"chunks": chunks}))

    async def commit_input_audio(self) -> None:
        self._require_connected()
        chunks = self._pending_input_audio
        self._pending_input_audio = []
        self.committed_audio.append(chunks)
        for chunk in chunks:
            self._record_outbound({"user_audio_chunk": chunk})
        self.calls.append(MockCall(method="commit_input_audio", args={"chunks": len(chunks)}))

    async def request_response(self) -> None:
        self._require_connected()
        self._record_outbound({"type": "user_activity"})
        self.calls.append(MockCall(method="request_response"))

    async def cancel_active_response(self) -> bool:
        self.calls.append(
            MockCall(
                method="cancel_active_response",
                args={"response_id": self.state.active_response_id},
            )
        )
        if not self.supports_cancellation or self.state.active_response_id is None:
            return False
        self._record_outbound({"type": "response.cancel"})
        return True

    async def request_text_utterance(self, text: str) -> None:
        self._require_connected()
        self._record_outbound({"type": "user_message", "text": text})
        self.calls.append(MockCall(method="request_text_utterance", args={"text": text}))

    async def append_input_video_frame(self, mime_type: str, data_base64: str) -> bool:
        self.calls.append(MockCall(method="append_input_video_frame", args={"mime_type": mime_type}))
        if not self.accept_video:
            return False
        self.video_frames.append((mime_type, data_base64))
        return True

    async def request_video_commentary(self, prompt: str) -> bool:
        self.calls.append(MockCall(method="request_video_commentary"))
        if not self.accept_video:
            return False
        self.commentary_prompts.append(prompt)
        return True

    async def close(self) -> None:
        self.state.connected = False
        self._pending_input_audio.clear()
        self._clear_active_response()
        self.calls.append(MockCall(method="close"))

    # -- Simulation helpers --

    def simulate_audio(self, audio: bytes = b"\x00\x01", response_id: str | None = None) -> str:
        active = self._open_response(response_id)
        self.state.active_response_has_audio = True
        self._emit(AudioDelta(audio=audio, response_id=active))
        return active

    def simulate_stale_audio(self, audio: bytes, response_id: str) -> None:
        """Audio tagged with a response that is no longer active."""
        self._emit(AudioDelta(audio=audio, response_id=response_id))

    def simulate_response_started(self, response_id: str | None = None) -> str:
        return self._open_response(response_id)

    def simulate_transcript(
        self,
        text: str,
        *,
        role: TranscriptRole = TranscriptRole.USER,
        subtype: TranscriptSubtype | None = None,
    ) -> None:
        if subtype is None:
            subtype = (
                TranscriptSubtype.USER if role is TranscriptRole.USER else TranscriptSubtype.AGENT
            )
        if role is TranscriptRole.ASSISTANT:
            self.state.last_agent_transcript = text
        self._emit(Transcript(role=role, text=text, subtype=subtype))

    def simulate_interruption(self) -> None:
        response_id = self.state.active_response_id
        self.state.reply_superseded_count += 1
        self._clear_active_response()
        self._emit(ResponseDone(status=ResponseStatus.INTERRUPTED, response_id=response_id))

    def simulate_response_done(self, status: ResponseStatus = ResponseStatus.COMPLETED) -> None:
        response_id = self.state.active_response_id
        self._clear_active_response()
        self._emit(ResponseDone(status=status, response_id=response_id))

    def simulate_error(self, code: str = "server_error", message: str = "boom") -> None:
        self.state.last_error = message
        self._emit(ProviderErrorEvent(code=code, message=message))

    def simulate_connection_closed(self, code: int | None = 1006, reason: str = "abnormal") -> None:
        self.state.connected = False
        self.state.last_close_code = code
        self.state.last_close_reason = reason
        response_id = self.state.active_response_id
        if response_id is not None:
            self._clear_active_response()
            self._emit(ResponseDone(status=ResponseStatus.INTERRUPTED, response_id=response_id))
        self._emit(ConnectionClosed(code=code, reason=reason))
