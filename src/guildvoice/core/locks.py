"""Per-guild locks serializing session start and end."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


@dataclass
class _GuildLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class GuildLocks:
    """One asyncio lock per guild, dropped once nobody holds or awaits it.

    Not reentrant: ``start`` and ``end`` never call each other while
    holding the lock.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _GuildLock] = {}

    @asynccontextmanager
    async def locked(self, guild_id: str) -> AsyncIterator[None]:
        entry = self._entries.setdefault(guild_id, _GuildLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[guild_id]

    def is_locked(self, guild_id: str) -> bool:
        entry = self._entries.get(guild_id)
        return entry is not None and entry.lock.locked()

    @property
    def size(self) -> int:
        return len(self._entries)
