"""All string enums for guildvoice."""

from __future__ import annotations

from enum import StrEnum, unique


@unique
class SessionMode(StrEnum):
    """How a session moves audio between the channel and the agent."""

    ELEVENLABS_REALTIME = "elevenlabs_realtime"
    OPENAI_REALTIME = "openai_realtime"
    GEMINI_REALTIME = "gemini_realtime"
    SEGMENTED = "segmented"

    @property
    def is_realtime(self) -> bool:
        return self is not SessionMode.SEGMENTED


@unique
class BotState(StrEnum):
    """Bot state as reported to monitoring."""

    SPEAKING = "speaking"
    PROCESSING = "processing"
    LISTENING = "listening"
    DISCONNECTED = "disconnected"
    IDLE = "idle"


@unique
class EndReason(StrEnum):
    MAX_DURATION = "max_duration"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    EXPLICIT_LEAVE = "explicit_leave"
    PRESENCE_VIOLATION = "presence_violation"
    PROVIDER_FATAL = "provider_fatal"
    SHUTDOWN = "shutdown"


@unique
class ResponseStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@unique
class TranscriptRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@unique
class TranscriptSubtype(StrEnum):
    """Which provider message produced a transcript."""

    USER = "user"
    AGENT = "agent"
    AGENT_CORRECTION = "agent_correction"


@unique
class TurnStage(StrEnum):
    """Pipeline boundaries recorded per turn, in pipeline order."""

    TRANSCRIPTION_START = "transcription_start"
    GENERATION_START = "generation_start"
    REPLY_REQUEST = "reply_request"
    AUDIO_START = "audio_start"


@unique
class MonitorEventKind(StrEnum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    TURN_IN = "turn_in"
    TURN_OUT = "turn_out"
    INTERRUPTION = "interruption"
    SNAPSHOT = "snapshot"
    CAPABILITY = "capability"
