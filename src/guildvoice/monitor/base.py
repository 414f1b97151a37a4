"""Session event types and the monitoring backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from guildvoice.models.enums import MonitorEventKind

ALL_GUILDS = "*"

# Snapshot-bearing kinds; a newer one makes an older one redundant.
SNAPSHOT_KINDS = frozenset({MonitorEventKind.SNAPSHOT, MonitorEventKind.SESSION_END})


@dataclass
class MonitorEvent:
    """A session lifecycle or turn event.

    ``seq`` is assigned by the backend on publish and increases by one
    per guild, so a subscriber can spot events that were dropped or
    coalesced on its side.
    """

    guild_id: str
    kind: MonitorEventKind
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def terminal(self) -> bool:
        return self.kind is MonitorEventKind.SESSION_END

    @property
    def carries_snapshot(self) -> bool:
        return self.kind in SNAPSHOT_KINDS

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "guild_id": self.guild_id,
            "seq": self.seq,
            "kind": self.kind.value,
            "session_id": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


MonitorCallback = Callable[[MonitorEvent], Coroutine[Any, Any, None]]


class MonitorBackend(ABC):
    """Where the session manager sends its events.

    The manager publishes from a single task, so events for one guild
    reach :meth:`publish` in the order they happened. Backends must keep
    that order per guild and must never lose a ``session_end`` event.
    """

    @abstractmethod
    async def publish(self, event: MonitorEvent) -> None:
        """Stamp ``event.seq`` and deliver *event* to matching subscribers."""
        ...

    @abstractmethod
    async def subscribe(
        self, guild_id: str, callback: MonitorCallback, *, replay_snapshot: bool = False
    ) -> str:
        """Subscribe to one guild, or every guild with ``"*"``.

        With ``replay_snapshot`` the latest snapshot-bearing event of each
        matching guild is delivered first, so a late subscriber starts
        from current state.

        Returns:
            A subscription ID that can be used to unsubscribe.
        """
        ...

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        """Returns True if the subscription existed and was removed."""
        ...

    def latest_snapshot(self, guild_id: str) -> MonitorEvent | None:
        """Latest snapshot or terminal event for *guild_id*, if kept."""
        return None

    async def close(self) -> None:
        """Clean up resources. The default implementation does nothing."""
        return None
