"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine
from typing import Any

import pytest

from guildvoice.monitor.base import MonitorBackend, MonitorCallback, MonitorEvent


@pytest.fixture
def advance() -> Callable[[int], Coroutine[Any, Any, None]]:
    """Yield control to let pending tasks run without real delay.

        await advance()       # 5 yields (default)
        await advance(20)     # 20 yields for heavier workloads
    """

    async def _advance(n: int = 5) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection.

    Messages queued with :meth:`push` are yielded by ``async for``;
    :meth:`drop` ends iteration the way a remote close does.
    """

    def __init__(self, messages: list[Any] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason = ""
        self._incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        for message in messages or []:
            self.push(message)

    def push(self, message: Any) -> None:
        if isinstance(message, (str, bytes)):
            self._incoming.put_nowait(message)
        else:
            self._incoming.put_nowait(json.dumps(message))

    def drop(self, code: int = 1006, reason: str = "abnormal closure") -> None:
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [str(m.get("type") or next(iter(m))) for m in self.sent]

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str | bytes:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


ELEVENLABS_METADATA = {
    "type": "conversation_initiation_metadata",
    "conversation_initiation_metadata_event": {
        "conversation_id": "conv_123",
        "agent_output_audio_format": "pcm_24000",
        "user_input_audio_format": "pcm_16000",
    },
}

OPENAI_SESSION_UPDATED = {
    "type": "session.updated",
    "session": {
        "id": "sess_001",
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
    },
}


class RecordingMonitor(MonitorBackend):
    """Monitor backend that keeps every published event in order."""

    def __init__(self) -> None:
        self.published: list[MonitorEvent] = []

    async def publish(self, event: MonitorEvent) -> None:
        event.seq = len(self.events(event.guild_id)) + 1
        self.published.append(event)

    async def subscribe(
        self, guild_id: str, callback: MonitorCallback, *, replay_snapshot: bool = False
    ) -> str:
        return "unused"

    async def unsubscribe(self, subscription_id: str) -> bool:
        return False

    def events(self, guild_id: str) -> list[MonitorEvent]:
        return [event for event in self.published if event.guild_id == guild_id]

    def kinds(self, guild_id: str) -> list[str]:
        return [event.kind.value for event in self.events(guild_id)]
