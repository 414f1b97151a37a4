"""Per-turn pipeline latency tracking."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from uuid import uuid4

from guildvoice.models.enums import TurnStage

logger = logging.getLogger("guildvoice.session.latency")

STAGE_FIELDS: dict[TurnStage, str] = {
    TurnStage.TRANSCRIPTION_START: "captured_to_transcription_start_ms",
    TurnStage.GENERATION_START: "transcription_to_generation_start_ms",
    TurnStage.REPLY_REQUEST: "generation_to_reply_request_ms",
    TurnStage.AUDIO_START: "reply_request_to_audio_start_ms",
}
_STAGE_ORDER = list(STAGE_FIELDS)


@dataclass
class LatencyEntry:
    """Stage durations for one user turn, in milliseconds.

    Each duration is measured from the previous filled stage (or from the
    capture time for the first). Stages that were never reached stay
    ``None``; ``total_ms`` is the sum of the filled stages.
    """

    captured_at: float
    turn_id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str | None = None
    captured_to_transcription_start_ms: float | None = None
    transcription_to_generation_start_ms: float | None = None
    generation_to_reply_request_ms: float | None = None
    reply_request_to_audio_start_ms: float | None = None
    total_ms: float | None = None
    abandoned: bool = False
    finalized: bool = False
    marks: dict[TurnStage, float] = field(default_factory=dict, repr=False)

    @property
    def last_mark_at(self) -> float:
        if not self.marks:
            return self.captured_at
        return self.marks[max(self.marks, key=_STAGE_ORDER.index)]

    def stage_durations(self) -> dict[str, float | None]:
        return {name: getattr(self, name) for name in STAGE_FIELDS.values()}


class LatencyTracker:
    """Bounded ring of per-turn latency entries for one session.

    Example:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(captured_at=0)
        tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 120)
        tracker.finalize(turn)
    """

    def __init__(self, max_entries: int = 50) -> None:
        self._entries: deque[LatencyEntry] = deque(maxlen=max_entries)
        self._open: dict[str, LatencyEntry] = {}

    def begin_turn(self, captured_at: float, *, user_id: str | None = None) -> LatencyEntry:
        turn = LatencyEntry(captured_at=captured_at, user_id=user_id)
        self._open[turn.turn_id] = turn
        return turn

    def mark_stage(self, turn: LatencyEntry, stage: TurnStage, at: float) -> bool:
        """Record *stage* at time *at*. Returns False if the mark was rejected."""
        if turn.finalized:
            logger.debug("Ignoring %s mark on finalized turn %s", stage, turn.turn_id)
            return False

        index = _STAGE_ORDER.index(stage)
        later = [s for s in _STAGE_ORDER[index:] if s in turn.marks]
        if later:
            logger.warning(
                "Out-of-order latency mark %s for turn %s (already have %s)",
                stage,
                turn.turn_id,
                ", ".join(later),
            )
            return False

        previous_at = turn.last_mark_at
        if at < previous_at:
            logger.warning(
                "Latency mark %s for turn %s precedes previous mark (%.1f < %.1f)",
                stage,
                turn.turn_id,
                at,
                previous_at,
            )
            return False

        setattr(turn, STAGE_FIELDS[stage], at - previous_at)
        turn.marks[stage] = at
        return True

    def finalize(self, turn: LatencyEntry, *, abandoned: bool = False) -> LatencyEntry:
        """Close the turn and push it into the ring (evicting the oldest)."""
        if turn.finalized:
            return turn
        filled = [value for value in turn.stage_durations().values() if value is not None]
        turn.total_ms = sum(filled) if filled else None
        turn.abandoned = abandoned
        turn.finalized = True
        self._open.pop(turn.turn_id, None)
        self._entries.append(turn)
        return turn

    def abandon(self, turn: LatencyEntry) -> LatencyEntry:
        """Finalize a turn that ended before audio started."""
        return self.finalize(turn, abandoned=True)

    def abandon_open_turns(self) -> None:
        for turn in list(self._open.values()):
            self.abandon(turn)

    @property
    def entries(self) -> list[LatencyEntry]:
        return list(self._entries)

    @property
    def open_turns(self) -> list[LatencyEntry]:
        return list(self._open.values())

    @property
    def latest(self) -> LatencyEntry | None:
        return self._entries[-1] if self._entries else None

    def averages(self) -> dict[str, float | None]:
        """Mean of each stage (and total) across finalized entries that reached it."""
        result: dict[str, float | None] = {}
        for name in [*STAGE_FIELDS.values(), "total_ms"]:
            values = [getattr(e, name) for e in self._entries if getattr(e, name) is not None]
            result[name] = sum(values) / len(values) if values else None
        return result
