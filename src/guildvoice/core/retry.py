"""Reconnect loop for dropped provider sockets."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from guildvoice.config import RetryPolicy
from guildvoice.errors import ReconnectAborted

logger = logging.getLogger("guildvoice.retry")

__all__ = ["ReconnectAborted", "backoff_delay", "reconnect_with_backoff"]


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay after failed attempt number *attempt* (one based)."""
    return min(
        policy.base_delay_seconds * policy.exponential_base ** max(attempt - 1, 0),
        policy.max_delay_seconds,
    )


async def reconnect_with_backoff(
    connect: Callable[[], Awaitable[None]],
    policy: RetryPolicy,
    *,
    should_continue: Callable[[], bool],
    label: str = "provider",
) -> int:
    """Call *connect* until it succeeds. Returns the attempt that succeeded.

    The session may end or pass its deadline while we sleep, so
    ``should_continue`` is checked before every attempt.

    Raises:
        ReconnectAborted: ``should_continue`` turned False first.
        Exception: The last connect error once ``1 + max_retries``
            attempts have failed.
    """
    attempts = 1 + policy.max_retries
    for attempt in range(1, attempts + 1):
        if not should_continue():
            raise ReconnectAborted(f"{label} reconnect stopped before attempt {attempt}")
        try:
            await connect()
        except Exception as exc:
            if attempt == attempts:
                raise
            delay = backoff_delay(policy, attempt)
            logger.warning(
                "%s reconnect attempt %d/%d failed: %s; next in %.1fs",
                label,
                attempt,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
        else:
            return attempt
    raise AssertionError("unreachable")
