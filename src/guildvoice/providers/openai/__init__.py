"""OpenAI Realtime adapter."""

from guildvoice.providers.openai.config import OpenAIRealtimeConfig
from guildvoice.providers.openai.realtime import OpenAIRealtimeClient

__all__ = ["OpenAIRealtimeClient", "OpenAIRealtimeConfig"]
