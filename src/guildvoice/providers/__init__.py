"""Realtime provider adapters."""

from guildvoice.providers.elevenlabs.config import ElevenLabsRealtimeConfig
from guildvoice.providers.gemini.config import GeminiRealtimeConfig
from guildvoice.providers.openai.config import OpenAIRealtimeConfig

__all__ = ["ElevenLabsRealtimeConfig", "GeminiRealtimeConfig", "OpenAIRealtimeConfig"]
