"""Provider protocol clients and their normalized events."""

from guildvoice.realtime.events import (
    AudioDelta,
    ConnectionClosed,
    ProviderErrorEvent,
    ProviderEvent,
    ResponseDone,
    Transcript,
)
from guildvoice.realtime.provider import (
    ProviderConnectionState,
    ProviderProtocolClient,
    RealtimeSessionConfig,
)
from guildvoice.realtime.websocket import WebSocketProtocolClient
from guildvoice.realtime.mock import MockProtocolClient
from guildvoice.realtime.factory import (
    ProtocolClientFactory,
    ProviderSettings,
    create_protocol_client,
    protocol_client_factory,
)

__all__ = [
    "AudioDelta",
    "ConnectionClosed",
    "MockProtocolClient",
    "ProtocolClientFactory",
    "ProviderConnectionState",
    "ProviderErrorEvent",
    "ProviderEvent",
    "ProviderProtocolClient",
    "ProviderSettings",
    "RealtimeSessionConfig",
    "ResponseDone",
    "Transcript",
    "WebSocketProtocolClient",
    "create_protocol_client",
    "protocol_client_factory",
]
