"""Tests for the OpenAI Realtime protocol client."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock, patch

import pytest

from guildvoice.errors import ConfigurationError
from guildvoice.models.enums import ResponseStatus, TranscriptRole
from guildvoice.providers.openai.config import OpenAIRealtimeConfig
from guildvoice.providers.openai.realtime import OpenAIRealtimeClient
from guildvoice.realtime.events import AudioDelta, ProviderErrorEvent, ResponseDone, Transcript
from guildvoice.realtime.provider import RealtimeSessionConfig
from tests.conftest import OPENAI_SESSION_UPDATED, FakeWebSocket


async def _connected(
    instructions: str = "You are helpful.",
) -> tuple[OpenAIRealtimeClient, FakeWebSocket, AsyncMock]:
    client = OpenAIRealtimeClient(OpenAIRealtimeConfig(api_key="sk-test"))
    ws = FakeWebSocket([OPENAI_SESSION_UPDATED])
    connect = AsyncMock(return_value=ws)
    with patch("websockets.connect", connect):
        await client.connect(RealtimeSessionConfig(instructions=instructions))
    return client, ws, connect


class TestConnect:
    async def test_session_update_and_headers(self) -> None:
        client, ws, connect = await _connected()

        url = connect.call_args.args[0]
        headers = connect.call_args.kwargs["additional_headers"]
        assert url == "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview"
        assert headers["Authorization"] == "Bearer sk-test"

        update = ws.sent[0]
        assert update["type"] == "session.update"
        assert update["session"]["turn_detection"] is None
        assert update["session"]["instructions"] == "You are helpful."
        assert update["session"]["voice"] == "alloy"

        state = client.get_state()
        assert state.connected
        assert state.session_id == "sess_001"
        assert state.output_sample_rate == 24000

    async def test_missing_api_key(self) -> None:
        client = OpenAIRealtimeClient(OpenAIRealtimeConfig(api_key=""))
        with pytest.raises(ConfigurationError):
            await client.connect(RealtimeSessionConfig())


class TestOutbound:
    async def test_audio_appended_immediately(self) -> None:
        client, ws, _ = await _connected()

        await client.append_input_audio(b"\xaa\xbb")
        await client.commit_input_audio()
        await client.request_response()

        assert ws.sent[1:] == [
            {"type": "input_audio_buffer.append", "audio": base64.b64encode(b"\xaa\xbb").decode()},
            {"type": "input_audio_buffer.commit"},
            {"type": "response.create"},
        ]

    async def test_text_utterance_requests_response(self) -> None:
        client, ws, _ = await _connected()
        await client.request_text_utterance("what time is it")

        assert ws.sent_types()[-2:] == ["conversation.item.create", "response.create"]
        assert ws.sent[-2]["item"]["content"][0]["text"] == "what time is it"

    async def test_cancel_only_with_active_response(self, advance) -> None:
        client, ws, _ = await _connected()
        assert await client.cancel_active_response() is False

        ws.push({"type": "response.created", "response": {"id": "resp_1"}})
        await advance()
        assert await client.cancel_active_response() is True
        assert ws.sent[-1] == {"type": "response.cancel"}


class TestInbound:
    async def test_response_lifecycle(self, advance) -> None:
        client, ws, _ = await _connected()
        ws.push({"type": "response.created", "response": {"id": "resp_1"}})
        ws.push(
            {
                "type": "response.audio.delta",
                "response_id": "resp_1",
                "delta": base64.b64encode(b"\x01\x02").decode(),
            }
        )
        ws.push({"type": "response.audio_transcript.done", "transcript": "Sure thing."})
        ws.push({"type": "response.done", "response": {"id": "resp_1", "status": "completed"}})
        await advance()

        events = [await client.next_event() for _ in range(3)]

        assert isinstance(events[0], AudioDelta)
        assert events[0].response_id == "resp_1"
        assert isinstance(events[1], Transcript)
        assert events[1].role == TranscriptRole.ASSISTANT
        assert isinstance(events[2], ResponseDone)
        assert events[2].status == ResponseStatus.COMPLETED
        assert client.get_state().active_response_id is None

    async def test_cancelled_and_incomplete_statuses(self, advance) -> None:
        client, ws, _ = await _connected()
        ws.push({"type": "response.done", "response": {"id": "r1", "status": "cancelled"}})
        ws.push({"type": "response.done", "response": {"id": "r2", "status": "incomplete"}})
        await advance()

        first = await client.next_event()
        second = await client.next_event()
        assert first.status == ResponseStatus.CANCELLED
        assert second.status == ResponseStatus.INTERRUPTED

    async def test_user_transcript(self, advance) -> None:
        client, ws, _ = await _connected()
        ws.push(
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "transcript": " hello ",
            }
        )
        await advance()

        event = await client.next_event()
        assert isinstance(event, Transcript)
        assert event.role == TranscriptRole.USER
        assert event.text == "hello"

    async def test_benign_cancel_error_ignored(self, advance) -> None:
        client, ws, _ = await _connected()
        ws.push(
            {
                "type": "error",
                "error": {"code": "response_cancel_not_active", "message": "no active response"},
            }
        )
        ws.push({"type": "error", "error": {"code": "invalid_value", "message": "bad"}})
        await advance()

        assert client.pending_event_count == 1
        event = await client.next_event()
        assert isinstance(event, ProviderErrorEvent)
        assert event.code == "invalid_value"
