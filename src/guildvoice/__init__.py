"""guildvoice - realtime voice sessions for guild voice channels."""

from guildvoice._version import __version__
from guildvoice.capability import (
    CapabilityConsumer,
    CapabilityToken,
    CapabilityTokenManager,
    GrantResult,
    UseResult,
)
from guildvoice.config import (
    CapabilityTokenConfig,
    RetryPolicy,
    StreamWatchConfig,
    VoiceSessionConfig,
)
from guildvoice.core import GuildLocks, reconnect_with_backoff
from guildvoice.errors import (
    ConfigurationError,
    GuildVoiceError,
    ProviderConnectError,
    ProviderNotConnectedError,
    ReconnectAborted,
    SessionNotFoundError,
)
from guildvoice.models import (
    BotState,
    EndReason,
    MonitorEventKind,
    ResponseStatus,
    RuntimeSnapshot,
    SessionMode,
    SessionSnapshot,
    TranscriptRole,
    TranscriptSubtype,
    TurnStage,
)
from guildvoice.monitor import InMemoryMonitor, MonitorBackend, MonitorEvent
from guildvoice.providers import (
    ElevenLabsRealtimeConfig,
    GeminiRealtimeConfig,
    OpenAIRealtimeConfig,
)
from guildvoice.realtime import (
    MockProtocolClient,
    ProviderConnectionState,
    ProviderProtocolClient,
    ProviderSettings,
    RealtimeSessionConfig,
    create_protocol_client,
)
from guildvoice.session import (
    LatencyEntry,
    LatencyTracker,
    Session,
    SegmentedPipeline,
    SegmentedTurnRunner,
    StreamWatch,
    TurnCoordinator,
    VoiceSessionManager,
    derive_bot_state,
)

__all__ = [
    "BotState",
    "CapabilityConsumer",
    "CapabilityToken",
    "CapabilityTokenConfig",
    "CapabilityTokenManager",
    "ConfigurationError",
    "ElevenLabsRealtimeConfig",
    "EndReason",
    "GeminiRealtimeConfig",
    "GrantResult",
    "GuildLocks",
    "GuildVoiceError",
    "InMemoryMonitor",
    "LatencyEntry",
    "LatencyTracker",
    "MockProtocolClient",
    "MonitorBackend",
    "MonitorEvent",
    "MonitorEventKind",
    "OpenAIRealtimeConfig",
    "ProviderConnectError",
    "ProviderConnectionState",
    "ProviderNotConnectedError",
    "ProviderProtocolClient",
    "ProviderSettings",
    "RealtimeSessionConfig",
    "ReconnectAborted",
    "ResponseStatus",
    "RetryPolicy",
    "RuntimeSnapshot",
    "SegmentedPipeline",
    "SegmentedTurnRunner",
    "Session",
    "SessionMode",
    "SessionNotFoundError",
    "SessionSnapshot",
    "StreamWatch",
    "StreamWatchConfig",
    "TranscriptRole",
    "TranscriptSubtype",
    "TurnCoordinator",
    "TurnStage",
    "UseResult",
    "VoiceSessionConfig",
    "__version__",
    "create_protocol_client",
    "derive_bot_state",
    "reconnect_with_backoff",
]
