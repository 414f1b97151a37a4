"""Select a protocol client for a session mode."""

from __future__ import annotations

from collections.abc import Callable

from pydantic import BaseModel

from guildvoice.errors import ConfigurationError
from guildvoice.models.enums import SessionMode
from guildvoice.providers.elevenlabs.config import ElevenLabsRealtimeConfig
from guildvoice.providers.gemini.config import GeminiRealtimeConfig
from guildvoice.providers.openai.config import OpenAIRealtimeConfig
from guildvoice.realtime.provider import ProviderProtocolClient

ProtocolClientFactory = Callable[[SessionMode], ProviderProtocolClient]


class ProviderSettings(BaseModel):
    """Credentials for each realtime provider the deployment can use."""

    elevenlabs: ElevenLabsRealtimeConfig | None = None
    openai: OpenAIRealtimeConfig | None = None
    gemini: GeminiRealtimeConfig | None = None


def create_protocol_client(mode: SessionMode, settings: ProviderSettings) -> ProviderProtocolClient:
    """Build the adapter for *mode*.

    Raises:
        ConfigurationError: The mode is segmented or its provider is not configured.
    """
    if mode is SessionMode.ELEVENLABS_REALTIME:
        if settings.elevenlabs is None:
            raise ConfigurationError("ElevenLabs realtime is not configured")
        from guildvoice.providers.elevenlabs.realtime import ElevenLabsRealtimeClient

        return ElevenLabsRealtimeClient(settings.elevenlabs)

    if mode is SessionMode.OPENAI_REALTIME:
        if settings.openai is None:
            raise ConfigurationError("OpenAI realtime is not configured")
        from guildvoice.providers.openai.realtime import OpenAIRealtimeClient

        return OpenAIRealtimeClient(settings.openai)

    if mode is SessionMode.GEMINI_REALTIME:
        if settings.gemini is None:
            raise ConfigurationError("Gemini realtime is not configured")
        from guildvoice.providers.gemini.realtime import GeminiRealtimeClient

        return GeminiRealtimeClient(settings.gemini)

    raise ConfigurationError(f"mode {mode} has no realtime provider")


def protocol_client_factory(settings: ProviderSettings) -> ProtocolClientFactory:
    """Bind *settings* into a factory the session manager can call per session."""

    def _factory(mode: SessionMode) -> ProviderProtocolClient:
        return create_protocol_client(mode, settings)

    return _factory
