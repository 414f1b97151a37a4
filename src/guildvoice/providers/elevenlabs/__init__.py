"""ElevenLabs conversational agent adapter."""

from guildvoice.providers.elevenlabs.config import ElevenLabsRealtimeConfig
from guildvoice.providers.elevenlabs.realtime import ElevenLabsRealtimeClient

__all__ = ["ElevenLabsRealtimeClient", "ElevenLabsRealtimeConfig"]
