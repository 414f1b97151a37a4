"""In-process monitoring backend."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict, deque
from collections.abc import Callable
from uuid import uuid4

from guildvoice.models.enums import MonitorEventKind
from guildvoice.monitor.base import ALL_GUILDS, MonitorBackend, MonitorCallback, MonitorEvent

logger = logging.getLogger("guildvoice.monitor")


class InMemoryMonitor(MonitorBackend):
    """Fan session events out to in-process subscribers.

    Each subscriber drains its own backlog in a background task, so a slow
    dashboard never blocks the session manager. When a backlog overflows,
    queued snapshots go first, then the oldest turn events; ``session_end``
    is always delivered. A queued snapshot is replaced by a newer one for
    the same guild.

    The latest snapshot-bearing event of each guild is kept (terminal ones
    included) for :meth:`latest_snapshot` and ``replay_snapshot``.
    """

    def __init__(self, max_queue_size: int = 100, retained_guilds: int = 256) -> None:
        self._max_queue_size = max_queue_size
        self._retained_guilds = retained_guilds
        self._subscriptions: dict[str, _Subscriber] = {}
        self._seq: defaultdict[str, int] = defaultdict(int)
        self._latest: dict[str, MonitorEvent] = {}
        self._closed = False

    async def publish(self, event: MonitorEvent) -> None:
        if self._closed:
            return
        self._seq[event.guild_id] += 1
        event.seq = self._seq[event.guild_id]
        if event.carries_snapshot:
            self._retain(event)
        for sub in self._subscriptions.values():
            if sub.matches(event.guild_id):
                sub.enqueue(event)

    async def subscribe(
        self, guild_id: str, callback: MonitorCallback, *, replay_snapshot: bool = False
    ) -> str:
        sub = _Subscriber(uuid4().hex, guild_id, callback, self._max_queue_size)
        if replay_snapshot:
            for event in self._latest.values():
                if sub.matches(event.guild_id):
                    sub.enqueue(event)
        self._subscriptions[sub.sub_id] = sub
        sub.start()
        return sub.sub_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is None:
            return False
        await sub.stop()
        return True

    def latest_snapshot(self, guild_id: str) -> MonitorEvent | None:
        return self._latest.get(guild_id)

    async def close(self) -> None:
        """Stop all subscriptions and clean up."""
        self._closed = True
        for sub in list(self._subscriptions.values()):
            await sub.stop()
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def _retain(self, event: MonitorEvent) -> None:
        self._latest.pop(event.guild_id, None)
        self._latest[event.guild_id] = event
        while len(self._latest) > self._retained_guilds:
            oldest = next(iter(self._latest))
            del self._latest[oldest]
            self._seq.pop(oldest, None)


class _Subscriber:
    def __init__(
        self, sub_id: str, guild_id: str, callback: MonitorCallback, max_queue_size: int
    ) -> None:
        self.sub_id = sub_id
        self.guild_id = guild_id
        self.callback = callback
        self._backlog: deque[MonitorEvent] = deque()
        self._max_queue_size = max_queue_size
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.dropped = 0

    def matches(self, guild_id: str) -> bool:
        return self.guild_id == ALL_GUILDS or self.guild_id == guild_id

    def enqueue(self, event: MonitorEvent) -> None:
        if self._stopped:
            return
        if event.kind is MonitorEventKind.SNAPSHOT:
            self._remove_first(
                lambda e: e.kind is MonitorEventKind.SNAPSHOT and e.guild_id == event.guild_id
            )
        while len(self._backlog) >= self._max_queue_size:
            if not (
                self._remove_first(lambda e: e.kind is MonitorEventKind.SNAPSHOT)
                or self._remove_first(lambda e: not e.terminal)
            ):
                break
            self.dropped += 1
        self._backlog.append(event)
        self._wakeup.set()

    def _remove_first(self, predicate: Callable[[MonitorEvent], bool]) -> bool:
        for queued in self._backlog:
            if predicate(queued):
                self._backlog.remove(queued)
                logger.debug(
                    "Monitor subscription %s dropped %s seq=%d for guild %s",
                    self.sub_id,
                    queued.kind,
                    queued.seq,
                    queued.guild_id,
                )
                return True
        return False

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"monitor_sub:{self.sub_id}")

    async def stop(self) -> None:
        self._stopped = True
        self._wakeup.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stopped:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._backlog and not self._stopped:
                event = self._backlog.popleft()
                try:
                    await self.callback(event)
                except Exception:
                    logger.exception("Error in monitor callback for subscription %s", self.sub_id)
