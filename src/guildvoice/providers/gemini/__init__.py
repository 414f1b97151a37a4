"""Gemini Live adapter."""

from guildvoice.providers.gemini.config import GeminiRealtimeConfig
from guildvoice.providers.gemini.realtime import GeminiRealtimeClient

__all__ = ["GeminiRealtimeClient", "GeminiRealtimeConfig"]
