"""Gemini Live configuration."""

from __future__ import annotations

from pydantic import BaseModel, SecretStr


class GeminiRealtimeConfig(BaseModel):
    """Gemini Live connection configuration.

    Attributes:
        api_key: Google AI API key.
        model: Live model identifier.
        voice: Prebuilt output voice.
    """

    api_key: SecretStr
    model: str = "gemini-2.5-flash-native-audio-preview-12-2025"
    voice: str = "Aoede"
