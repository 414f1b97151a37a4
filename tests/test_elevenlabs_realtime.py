"""Tests for the ElevenLabs realtime protocol client."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from guildvoice.errors import ConfigurationError, ProviderConnectError, ProviderNotConnectedError
from guildvoice.models.enums import ResponseStatus, TranscriptRole, TranscriptSubtype
from guildvoice.providers.elevenlabs.config import ElevenLabsRealtimeConfig
from guildvoice.providers.elevenlabs.realtime import ElevenLabsRealtimeClient, parse_pcm_rate
from guildvoice.realtime.events import (
    AudioDelta,
    ConnectionClosed,
    ProviderErrorEvent,
    ResponseDone,
    Transcript,
)
from guildvoice.realtime.provider import RealtimeSessionConfig
from tests.conftest import ELEVENLABS_METADATA, FakeWebSocket

SIGNED_URL = "wss://api.elevenlabs.io/v1/convai/conversation?agent_id=agent_1&conversation_signature=sig"


def _signed_url_http(status: int = 200, payload: object | None = None) -> AsyncMock:
    request = httpx.Request("GET", "https://api.elevenlabs.io/v1/convai/conversation/get-signed-url")
    http = AsyncMock(spec=httpx.AsyncClient)
    http.get.return_value = httpx.Response(
        status,
        json={"signed_url": SIGNED_URL} if payload is None else payload,
        request=request,
    )
    return http


def _make_client(http: AsyncMock | None = None) -> ElevenLabsRealtimeClient:
    config = ElevenLabsRealtimeConfig(api_key="xi-test-key", agent_id="agent_1")
    return ElevenLabsRealtimeClient(config, http_client=http or _signed_url_http())


async def _connect(
    client: ElevenLabsRealtimeClient,
    ws: FakeWebSocket,
    instructions: str = "be brief",
) -> AsyncMock:
    ws.push(ELEVENLABS_METADATA)
    connect = AsyncMock(return_value=ws)
    with patch("websockets.connect", connect):
        await client.connect(RealtimeSessionConfig(instructions=instructions))
    return connect


async def _drain(client: ElevenLabsRealtimeClient) -> list[object]:
    events = []
    while client.pending_event_count:
        events.append(await client.next_event())
    return events


def _audio_message(data: bytes) -> dict[str, object]:
    return {
        "type": "audio",
        "audio_event": {"audio_base_64": base64.b64encode(data).decode(), "event_id": 1},
    }


class TestParsePcmRate:
    def test_parses_and_clamps(self) -> None:
        assert parse_pcm_rate("pcm_16000") == 16000
        assert parse_pcm_rate("PCM_96000") == 48000
        assert parse_pcm_rate("ulaw_8000") is None
        assert parse_pcm_rate(None) is None


class TestConnect:
    async def test_handshake(self) -> None:
        http = _signed_url_http()
        client = _make_client(http)
        ws = FakeWebSocket()

        connect = await _connect(client, ws)

        http.get.assert_awaited_once()
        _, kwargs = http.get.call_args
        assert kwargs["params"] == {"agent_id": "agent_1"}
        assert kwargs["headers"] == {"xi-api-key": "xi-test-key"}
        assert connect.call_args.args[0] == SIGNED_URL

        assert ws.sent[0] == {
            "type": "conversation_initiation_client_data",
            "conversation_config_override": {"agent": {"prompt": {"prompt": "be brief"}}},
        }
        state = client.get_state()
        assert state.connected
        assert state.session_id == "conv_123"
        assert state.input_sample_rate == 16000
        assert state.output_sample_rate == 24000

    async def test_empty_instructions_omit_override(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws, instructions="   ")
        assert ws.sent[0] == {"type": "conversation_initiation_client_data"}

    async def test_missing_agent_id(self) -> None:
        config = ElevenLabsRealtimeConfig(api_key="xi-test-key", agent_id=" ")
        client = ElevenLabsRealtimeClient(config, http_client=_signed_url_http())
        with pytest.raises(ConfigurationError):
            await client.connect(RealtimeSessionConfig())

    async def test_signed_url_http_error(self) -> None:
        client = _make_client(_signed_url_http(status=401, payload={"detail": "unauthorized"}))
        with pytest.raises(ProviderConnectError) as exc_info:
            await client.connect(RealtimeSessionConfig())
        assert exc_info.value.status_code == 401
        assert "xi-test-key" not in str(exc_info.value.diagnostics)

    async def test_signed_url_missing(self) -> None:
        client = _make_client(_signed_url_http(payload={"nope": True}))
        with pytest.raises(ProviderConnectError):
            await client.connect(RealtimeSessionConfig())

    async def test_socket_connect_failure_redacts_url(self) -> None:
        client = _make_client()
        with (
            patch("websockets.connect", AsyncMock(side_effect=OSError("refused"))),
            pytest.raises(ProviderConnectError) as exc_info,
        ):
            await client.connect(RealtimeSessionConfig())
        assert "signature=sig" not in exc_info.value.diagnostics["url"]
        assert not client.get_state().connected

    async def test_close_during_handshake(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        ws.drop(code=4001, reason="bad agent")
        with (
            patch("websockets.connect", AsyncMock(return_value=ws)),
            pytest.raises(ProviderConnectError) as exc_info,
        ):
            await client.connect(RealtimeSessionConfig())
        assert exc_info.value.diagnostics["close_code"] == 4001
        assert client.pending_event_count == 0


class TestOutbound:
    async def test_audio_bytes_are_base64_encoded(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)

        await client.append_input_audio(b"\x01\x02\x03")
        await client.append_input_audio("already-encoded")
        assert len(ws.sent) == 1
        await client.commit_input_audio()

        assert ws.sent[1:] == [
            {"user_audio_chunk": base64.b64encode(b"\x01\x02\x03").decode()},
            {"user_audio_chunk": "already-encoded"},
        ]

    async def test_request_response_and_text(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)

        await client.request_response()
        await client.request_text_utterance("  hello there ")

        assert ws.sent[-2:] == [
            {"type": "user_activity"},
            {"type": "user_message", "text": "hello there"},
        ]

    async def test_outbound_history_hides_audio(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        await client.append_input_audio(b"\x00" * 300)
        await client.commit_input_audio()

        state = client.get_state()
        assert state.last_outbound_event_type == "user_audio_chunk"
        assert "<400 chars>" in state.recent_outbound_events[-1].preview

    async def test_cancel_is_noop(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push(_audio_message(b"pcm"))
        await client.next_event()

        assert await client.cancel_active_response() is False
        assert client.get_state().active_response_id is not None

    async def test_send_after_close_raises(self) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        await client.close()

        with pytest.raises(ProviderNotConnectedError):
            await client.request_response()
        assert ws.closed


class TestInbound:
    async def test_audio_delta(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push(_audio_message(b"\x10\x20"))

        event = await client.next_event()

        assert isinstance(event, AudioDelta)
        assert event.audio == b"\x10\x20"
        assert event.response_id == "elevenlabs_realtime-response-1"
        assert client.get_state().active_response_status == ResponseStatus.IN_PROGRESS

    async def test_bad_audio_dropped(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push({"type": "audio", "audio_event": {"audio_base_64": "!!not base64!!"}})
        await advance()

        assert client.pending_event_count == 0
        assert client.get_state().active_response_id is None

    async def test_ping_gets_exactly_one_pong(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        sent_before = len(ws.sent)

        ws.push({"type": "ping", "ping_event": {"event_id": 42, "ping_ms": 30}})
        await advance()

        assert ws.sent[sent_before:] == [{"type": "pong", "event_id": 42}]
        assert client.pending_event_count == 0

    async def test_ping_without_event_id_ignored(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        sent_before = len(ws.sent)

        ws.push({"type": "ping", "ping_event": {}})
        await advance()

        assert len(ws.sent) == sent_before

    async def test_interruption(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push(_audio_message(b"pcm"))
        ws.push({"type": "interruption", "interruption_event": {"event_id": 7}})
        await advance()

        events = await _drain(client)

        done = [e for e in events if isinstance(e, ResponseDone)]
        assert len(done) == 1
        assert done[0].status == ResponseStatus.INTERRUPTED
        assert done[0].response_id == "elevenlabs_realtime-response-1"
        assert client.get_state().reply_superseded_count == 1
        assert client.get_state().active_response_id is None

    async def test_transcripts_and_correction(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push({"type": "user_transcript", "user_transcription_event": {"user_transcript": "hi bot"}})
        ws.push({"type": "agent_response", "agent_response_event": {"agent_response": "hey there"}})
        ws.push(
            {
                "type": "agent_response_correction",
                "agent_response_correction_event": {
                    "original_agent_response": "hey there",
                    "corrected_agent_response": "hey",
                },
            }
        )
        await advance()

        events = await _drain(client)

        assert [(e.role, e.text, e.subtype) for e in events if isinstance(e, Transcript)] == [
            (TranscriptRole.USER, "hi bot", TranscriptSubtype.USER),
            (TranscriptRole.ASSISTANT, "hey there", TranscriptSubtype.AGENT),
            (TranscriptRole.ASSISTANT, "hey", TranscriptSubtype.AGENT_CORRECTION),
        ]
        assert client.get_state().last_agent_transcript == "hey"

    async def test_invalid_json_dropped(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push("{not json")
        ws.push("[1, 2]")
        ws.push(_audio_message(b"ok"))
        await advance()

        events = await _drain(client)

        assert len(events) == 1
        assert isinstance(events[0], AudioDelta)
        assert client.get_state().connected

    async def test_error_event(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push({"type": "error", "error": {"code": "quota", "message": "out of credits"}})
        await advance()

        event = await client.next_event()

        assert isinstance(event, ProviderErrorEvent)
        assert event.code == "quota"
        assert client.get_state().last_error == "out of credits"

    async def test_remote_close_emits_connection_closed(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        ws.push(_audio_message(b"pcm"))
        ws.drop(code=1011, reason="server error")
        await advance()

        events = await _drain(client)

        assert [type(e) for e in events] == [AudioDelta, ResponseDone, ConnectionClosed]
        assert events[1].status == ResponseStatus.INTERRUPTED
        closed = events[2]
        assert isinstance(closed, ConnectionClosed)
        assert closed.code == 1011
        state = client.get_state()
        assert not state.connected
        assert state.last_close_code == 1011
        assert state.last_close_reason == "server error"

    async def test_local_close_emits_nothing(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        await client.close()
        await advance()

        assert client.pending_event_count == 0

    async def test_handlers_notified_during_drain(self, advance) -> None:
        client = _make_client()
        ws = FakeWebSocket()
        await _connect(client, ws)
        seen: list[str] = []
        client.on_event(lambda event: seen.append(event.type))
        ws.push(_audio_message(b"a"))
        await advance()
        assert seen == []

        await client.next_event()
        assert seen == ["audio_delta"]
