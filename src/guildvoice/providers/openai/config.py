"""OpenAI Realtime configuration."""

from __future__ import annotations

from pydantic import BaseModel, SecretStr


class OpenAIRealtimeConfig(BaseModel):
    """OpenAI Realtime connection configuration.

    Attributes:
        api_key: API key for authentication.
        model: Realtime model identifier.
        base_url: WebSocket endpoint; the model is appended as a query parameter.
        voice: Output voice.
        transcription_model: Model used for input audio transcription.
    """

    api_key: SecretStr
    model: str = "gpt-4o-realtime-preview"
    base_url: str = "wss://api.openai.com/v1/realtime"
    voice: str = "alloy"
    transcription_model: str = "gpt-4o-mini-transcribe"
