"""Enums and monitoring snapshot models."""

from guildvoice.models.enums import (
    BotState,
    EndReason,
    MonitorEventKind,
    ResponseStatus,
    SessionMode,
    TranscriptRole,
    TranscriptSubtype,
    TurnStage,
)
from guildvoice.models.snapshot import (
    LatencySummary,
    LatencyTurnSnapshot,
    OutboundEventSnapshot,
    ProviderStateSnapshot,
    RuntimeSnapshot,
    SessionSnapshot,
    StreamWatchSnapshot,
)

__all__ = [
    "BotState",
    "EndReason",
    "LatencySummary",
    "LatencyTurnSnapshot",
    "MonitorEventKind",
    "OutboundEventSnapshot",
    "ProviderStateSnapshot",
    "ResponseStatus",
    "RuntimeSnapshot",
    "SessionMode",
    "SessionSnapshot",
    "StreamWatchSnapshot",
    "TranscriptRole",
    "TranscriptSubtype",
    "TurnStage",
]
