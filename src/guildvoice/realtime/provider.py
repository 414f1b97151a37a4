"""ProviderProtocolClient abstract base class."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar

from guildvoice.errors import ProviderNotConnectedError
from guildvoice.models.enums import ResponseStatus, SessionMode
from guildvoice.realtime.events import ProviderEvent, ResponseDone

logger = logging.getLogger("guildvoice.realtime.provider")

MIN_SAMPLE_RATE = 8000
MAX_SAMPLE_RATE = 48000
DEFAULT_SAMPLE_RATE = 16000
OUTBOUND_HISTORY_SIZE = 8
PREVIEW_MAX_CHARS = 280

# Keys whose values are audio or image payloads; never kept in history.
_PAYLOAD_KEYS = frozenset({"audio", "user_audio_chunk", "delta", "data", "image"})

ProviderEventHandler = Callable[[ProviderEvent], Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def clamp_sample_rate(value: Any, default: int = DEFAULT_SAMPLE_RATE) -> int:
    """Clamp a sample rate to 8000..48000 Hz."""
    try:
        rate = int(value)
    except (TypeError, ValueError):
        return default
    return max(MIN_SAMPLE_RATE, min(MAX_SAMPLE_RATE, rate))


def encode_audio(audio: bytes | str) -> str:
    """Base64-encode raw audio; strings are assumed to be encoded already."""
    if isinstance(audio, str):
        return audio
    return base64.b64encode(audio).decode("ascii")


def compact_payload(payload: Any) -> Any:
    """Copy *payload* with ``None`` values dropped and media replaced by a length marker."""
    if isinstance(payload, dict):
        compact: dict[str, Any] = {}
        for key, value in payload.items():
            if value is None:
                continue
            if key in _PAYLOAD_KEYS and isinstance(value, str):
                compact[key] = f"<{len(value)} chars>"
            else:
                compact[key] = compact_payload(value)
        return compact
    if isinstance(payload, list):
        return [compact_payload(item) for item in payload if item is not None]
    return payload


def preview_json(payload: Any, max_chars: int = PREVIEW_MAX_CHARS) -> str:
    try:
        text = json.dumps(payload, default=str)
    except (TypeError, ValueError):
        text = repr(payload)
    if len(text) > max_chars:
        return text[: max_chars - 3] + "..."
    return text


@dataclass(frozen=True)
class OutboundEventSummary:
    """Redacted record of one message sent to the provider."""

    type: str
    preview: str
    sent_at: datetime = field(default_factory=_utcnow)


@dataclass
class RealtimeSessionConfig:
    """What the session asks of the provider on connect.

    The sample rates here are requests only. Negotiated rates arrive in
    the provider's acknowledgement and are stored on the connection state.
    """

    instructions: str = ""
    input_sample_rate: int = DEFAULT_SAMPLE_RATE
    output_sample_rate: int = DEFAULT_SAMPLE_RATE
    voice: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderConnectionState:
    """Observable state of one provider connection.

    Mutated only by the owning client.
    """

    connected: bool = False
    session_id: str | None = None
    connected_at: datetime | None = None
    last_event_at: datetime | None = None
    active_response_id: str | None = None
    active_response_status: ResponseStatus | None = None
    active_response_has_audio: bool = False
    reply_superseded_count: int = 0
    last_error: str | None = None
    last_close_code: int | None = None
    last_close_reason: str | None = None
    last_outbound_event_type: str | None = None
    recent_outbound_events: deque[OutboundEventSummary] = field(
        default_factory=lambda: deque(maxlen=OUTBOUND_HISTORY_SIZE)
    )
    input_sample_rate: int = DEFAULT_SAMPLE_RATE
    output_sample_rate: int = DEFAULT_SAMPLE_RATE
    last_agent_transcript: str | None = None

    @property
    def pending_turns(self) -> int:
        """Responses in flight that have not produced audio yet."""
        if self.active_response_id is not None and not self.active_response_has_audio:
            return 1
        return 0


class ProviderProtocolClient(ABC):
    """Abstract base class for realtime speech provider connections.

    One client owns one persistent connection for one session. Inbound
    provider messages are normalized into :mod:`guildvoice.realtime.events`
    and placed on a per-client queue. The owner drains the queue with
    :meth:`events`; handlers registered with :meth:`on_event` are notified
    during that drain, in receipt order, never from the socket reader.

    Example:
        client = ElevenLabsRealtimeClient(config)
        await client.connect(RealtimeSessionConfig(instructions="be brief"))
        await client.append_input_audio(pcm_bytes)
        await client.commit_input_audio()
        await client.request_response()
        async for event in client.events():
            ...
    """

    mode: ClassVar[SessionMode]
    supports_cancellation: ClassVar[bool] = False
    supports_video_input: ClassVar[bool] = False
    # True when response ids come from the provider and tag every audio delta.
    native_response_ids: ClassVar[bool] = False

    def __init__(self) -> None:
        self.state = ProviderConnectionState()
        self._queue: asyncio.Queue[ProviderEvent] = asyncio.Queue()
        self._handlers: list[ProviderEventHandler] = []
        self._pending_input_audio: list[str] = []
        self._response_seq = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g. 'elevenlabs_realtime')."""
        ...

    # -- Operations --

    @abstractmethod
    async def connect(self, session_config: RealtimeSessionConfig) -> None:
        """Open the connection, send the initiation message, await the ack.

        Raises:
            ProviderConnectError: The connection or handshake failed.
        """
        ...

    async def append_input_audio(self, audio: bytes | str) -> None:
        """Buffer one chunk of user audio until :meth:`commit_input_audio`.

        Bytes are base64-encoded, strings are passed through unchanged.
        """
        self._pending_input_audio.append(encode_audio(audio))

    @abstractmethod
    async def commit_input_audio(self) -> None:
        """Mark the end of a user utterance and flush buffered audio."""
        ...

    @abstractmethod
    async def request_response(self) -> None:
        """Nudge the provider to produce an agent response."""
        ...

    async def cancel_active_response(self) -> bool:
        """Cancel the in-flight response if the provider can.

        Returns False when the provider has no cancellation primitive; the
        outstanding audio then keeps playing.
        """
        logger.debug("%s has no cancellation primitive; cancel is a no-op", self.name)
        return False

    @abstractmethod
    async def request_text_utterance(self, text: str) -> None:
        """Send a text message for the agent to answer in voice."""
        ...

    async def append_input_video_frame(self, mime_type: str, data_base64: str) -> bool:
        """Forward a screen frame. Returns False where video input is unsupported."""
        return False

    async def request_video_commentary(self, prompt: str) -> bool:
        """Ask for a spoken line about the latest forwarded frame.

        Returns False where the provider cannot see video.
        """
        return False

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Never emits ``connection_closed``."""
        ...

    def get_state(self) -> ProviderConnectionState:
        return self.state

    # -- Response bookkeeping --

    def supersede_active_response(self) -> str | None:
        """Discard the active response handle after a barge-in.

        Returns the superseded response id, or None if nothing was active.
        """
        response_id = self.state.active_response_id
        if response_id is None:
            return None
        self.state.reply_superseded_count += 1
        self._clear_active_response()
        logger.info(
            "%s response %s superseded (count=%d)",
            self.name,
            response_id,
            self.state.reply_superseded_count,
        )
        return response_id

    def complete_active_response(self) -> None:
        """Close the active response as completed (agent went quiet)."""
        response_id = self.state.active_response_id
        if response_id is None:
            return
        self._clear_active_response()
        self._emit(ResponseDone(status=ResponseStatus.COMPLETED, response_id=response_id))

    def _open_response(self, response_id: str | None = None) -> str:
        if self.state.active_response_id is not None:
            return self.state.active_response_id
        if response_id is None:
            self._response_seq += 1
            response_id = f"{self.name}-response-{self._response_seq}"
        self.state.active_response_id = response_id
        self.state.active_response_status = ResponseStatus.IN_PROGRESS
        self.state.active_response_has_audio = False
        return response_id

    def _clear_active_response(self) -> None:
        self.state.active_response_id = None
        self.state.active_response_status = None
        self.state.active_response_has_audio = False

    # -- Outbound history --

    def _record_outbound(self, payload: dict[str, Any]) -> None:
        event_type = str(payload.get("type") or next(iter(payload), "unknown"))
        self.state.last_outbound_event_type = event_type
        self.state.recent_outbound_events.append(
            OutboundEventSummary(type=event_type, preview=preview_json(compact_payload(payload)))
        )

    def _require_connected(self) -> None:
        if not self.state.connected:
            raise ProviderNotConnectedError(f"{self.name} socket is not open")

    # -- Event queue --

    def on_event(self, handler: ProviderEventHandler) -> None:
        """Register a handler notified for each event as the owner drains it."""
        self._handlers.append(handler)

    def _emit(self, event: ProviderEvent) -> None:
        self.state.last_event_at = event.timestamp
        self._queue.put_nowait(event)

    @property
    def pending_event_count(self) -> int:
        return self._queue.qsize()

    async def next_event(self) -> ProviderEvent:
        """Wait for the next event and notify handlers before returning it."""
        event = await self._queue.get()
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Error in %s event handler for %s", self.name, event.type)
        return event

    async def events(self) -> AsyncIterator[ProviderEvent]:
        """Drain events in receipt order until the consumer stops."""
        while True:
            yield await self.next_event()
