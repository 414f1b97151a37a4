"""ElevenLabs Conversational AI configuration."""

from __future__ import annotations

from pydantic import BaseModel, SecretStr


class ElevenLabsRealtimeConfig(BaseModel):
    """ElevenLabs agent connection configuration.

    Attributes:
        api_key: ElevenLabs API key, sent as ``xi-api-key`` when fetching
            the signed socket URL.
        agent_id: Conversational agent to talk to.
        base_url: REST base used for the signed URL request.
        timeout: HTTP timeout for the signed URL request in seconds.
    """

    api_key: SecretStr
    agent_id: str
    base_url: str = "https://api.elevenlabs.io"
    timeout: float = 10.0
