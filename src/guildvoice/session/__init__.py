"""Voice sessions: state, turns, latency, stream watch, and the manager."""

from guildvoice.session.latency import LatencyEntry, LatencyTracker
from guildvoice.session.state import CaptureHandle, Session, TranscriptEntry, build_snapshot
from guildvoice.session.turns import BargeInOutcome, TurnCoordinator, derive_bot_state
from guildvoice.session.stream_watch import FramePayload, StreamWatch, WatchResult
from guildvoice.session.pipeline import (
    AudioSink,
    CapturedUtterance,
    ReplyGenerator,
    SegmentedPipeline,
    SegmentedTurnRunner,
    SpeechSynthesizer,
    TranscriptionBackend,
)
from guildvoice.session.manager import VoiceSessionManager

__all__ = [
    "AudioSink",
    "BargeInOutcome",
    "CaptureHandle",
    "CapturedUtterance",
    "FramePayload",
    "LatencyEntry",
    "LatencyTracker",
    "ReplyGenerator",
    "SegmentedPipeline",
    "SegmentedTurnRunner",
    "Session",
    "SpeechSynthesizer",
    "StreamWatch",
    "TranscriptEntry",
    "TranscriptionBackend",
    "TurnCoordinator",
    "VoiceSessionManager",
    "WatchResult",
    "build_snapshot",
    "derive_bot_state",
]
