"""Screen-frame ingestion for a session's stream watch."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from guildvoice.capability.tokens import NOT_ARMED, REQUESTER_NOT_PRESENT, TARGET_NOT_PRESENT
from guildvoice.config import StreamWatchConfig
from guildvoice.session.state import Session

logger = logging.getLogger("guildvoice.session.stream_watch")

RATE_WINDOW_SECONDS = 60.0
COMMENTARY_PROMPT = (
    "You're in Discord VC watching {streamer}'s live stream. "
    "Give one short in-character spoken commentary line about the latest frame. "
    "If unclear, say that briefly without pretending certainty."
)


@dataclass(frozen=True)
class FramePayload:
    """One screen frame posted through a capability token."""

    mime_type: str
    data_base64: str
    streamer_id: str | None = None
    streamer_name: str | None = None


@dataclass(frozen=True)
class WatchResult:
    ok: bool
    reason: str
    forwarded: bool = False
    commentary: bool = False


def approximate_decoded_bytes(data_base64: str) -> int:
    return len(data_base64) * 3 // 4


class StreamWatch:
    """Arms, feeds, and stops the screen watch held on a session.

    Accepted frames are forwarded to the provider connection when it
    takes video input, otherwise the latest frame is kept on the session
    for the next reply to use. A forwarded frame may also prompt one
    spoken commentary line, at most once per commentary interval and
    only while nobody is talking.
    """

    def __init__(
        self,
        config: StreamWatchConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or StreamWatchConfig()
        self._clock = clock

    def enable(self, session: Session | None, *, requester_id: str, target_id: str) -> WatchResult:
        if session is None:
            return WatchResult(ok=False, reason="session_not_found")
        if not self._config.enabled:
            return WatchResult(ok=False, reason="stream_watch_disabled")
        if not requester_id or not target_id:
            return WatchResult(ok=False, reason="invalid_request")
        if requester_id not in session.participants:
            return WatchResult(ok=False, reason=REQUESTER_NOT_PRESENT)
        if target_id not in session.participants:
            return WatchResult(ok=False, reason=TARGET_NOT_PRESENT)

        watch = session.stream_watch
        if not (watch.active and watch.target_user_id == target_id):
            watch.reset()
        watch.active = True
        watch.target_user_id = target_id
        watch.requested_by_user_id = requester_id
        watch.armed_at = self._clock()
        logger.info(
            "Stream watch armed guild=%s target=%s requester=%s",
            session.guild_id,
            target_id,
            requester_id,
        )
        return WatchResult(ok=True, reason="watching_started")

    async def ingest_frame(self, session: Session | None, frame: FramePayload) -> WatchResult:
        if session is None:
            return WatchResult(ok=False, reason="session_not_found")
        watch = session.stream_watch
        if not watch.active:
            return WatchResult(ok=False, reason=NOT_ARMED)

        streamer_id = frame.streamer_id or watch.target_user_id
        if not streamer_id:
            return WatchResult(ok=False, reason="streamer_required")
        if streamer_id != watch.target_user_id:
            return WatchResult(ok=False, reason="target_user_mismatch")

        mime_type = frame.mime_type.strip().lower()
        if mime_type not in self._config.allowed_mime_types:
            return WatchResult(ok=False, reason="invalid_mime_type")
        data = frame.data_base64.strip()
        if not data:
            return WatchResult(ok=False, reason="frame_data_required")
        if approximate_decoded_bytes(data) > self._config.frame_byte_limit:
            return WatchResult(ok=False, reason="frame_too_large")

        now = self._clock()
        while watch.frame_times and now - watch.frame_times[0] >= RATE_WINDOW_SECONDS:
            watch.frame_times.popleft()
        if len(watch.frame_times) >= self._config.frames_per_minute_limit:
            return WatchResult(ok=False, reason="frame_rate_limited")

        watch.frame_times.append(now)
        watch.last_frame_at = now
        watch.ingested_frame_count += 1

        forwarded = False
        connection = session.connection
        if connection is not None and connection.get_state().connected:
            forwarded = await connection.append_input_video_frame(mime_type, data)
        commentary = False
        if forwarded:
            commentary = await self._request_commentary(session, frame, now)
        else:
            watch.latest_frame_mime = mime_type
            watch.latest_frame_data = data
        return WatchResult(ok=True, reason="ok", forwarded=forwarded, commentary=commentary)

    def stop(self, session: Session | None, reason: str) -> bool:
        if session is None or not session.stream_watch.active:
            return False
        logger.info("Stream watch stopped guild=%s reason=%s", session.guild_id, reason)
        session.stream_watch.reset()
        return True

    async def _request_commentary(self, session: Session, frame: FramePayload, now: float) -> bool:
        watch = session.stream_watch
        connection = session.connection
        if connection is None or not self._config.commentary_enabled:
            return False
        if watch.last_commentary_at is not None:
            if now - watch.last_commentary_at < self._config.commentary_gap:
                return False
        if (
            session.active_captures
            or session.bot_turn_open
            or session.pending_transcription_turns
            or connection.get_state().active_response_id is not None
        ):
            return False

        prompt = COMMENTARY_PROMPT.format(streamer=frame.streamer_name or "the streamer")
        if not await connection.request_video_commentary(prompt):
            return False
        watch.last_commentary_at = now
        logger.debug("Stream commentary requested guild=%s", session.guild_id)
        return True
