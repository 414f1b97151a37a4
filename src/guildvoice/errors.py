"""Exceptions raised by guildvoice."""

from __future__ import annotations


class GuildVoiceError(Exception):
    """Base exception for all guildvoice errors."""


class SessionNotFoundError(GuildVoiceError):
    """No live voice session for the guild."""


class ConfigurationError(GuildVoiceError):
    """Provider or session configuration is missing a required value."""


class ProviderNotConnectedError(GuildVoiceError):
    """A send was attempted on a provider socket that is not open."""


class ReconnectAborted(GuildVoiceError):
    """A reconnect loop stopped because its session ended or expired."""


class ProviderConnectError(GuildVoiceError):
    """Opening or handshaking the provider connection failed.

    Attributes:
        provider: Name of the provider that failed.
        status_code: HTTP status code from the provider, if available.
        diagnostics: Sanitized connection diagnostics (no secrets).
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
        diagnostics: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.diagnostics = diagnostics or {}
