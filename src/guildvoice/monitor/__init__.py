"""Monitoring pub/sub for session snapshots and turn events."""

from guildvoice.monitor.base import ALL_GUILDS, MonitorBackend, MonitorCallback, MonitorEvent
from guildvoice.monitor.memory import InMemoryMonitor

__all__ = [
    "ALL_GUILDS",
    "InMemoryMonitor",
    "MonitorBackend",
    "MonitorCallback",
    "MonitorEvent",
]
