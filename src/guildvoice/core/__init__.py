"""Shared async primitives: per-guild locks and provider reconnects."""

from guildvoice.core.locks import GuildLocks
from guildvoice.core.retry import backoff_delay, reconnect_with_backoff

__all__ = ["GuildLocks", "backoff_delay", "reconnect_with_backoff"]
