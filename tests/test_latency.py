"""Tests for per-turn latency tracking."""

from __future__ import annotations

from guildvoice.models.enums import TurnStage
from guildvoice.session.latency import LatencyTracker


class TestStageDurations:
    def test_full_turn(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(0, user_id="u1")
        assert tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 120)
        assert tracker.mark_stage(turn, TurnStage.GENERATION_START, 340)
        assert tracker.mark_stage(turn, TurnStage.REPLY_REQUEST, 410)
        assert tracker.mark_stage(turn, TurnStage.AUDIO_START, 900)
        tracker.finalize(turn)

        assert turn.captured_to_transcription_start_ms == 120
        assert turn.transcription_to_generation_start_ms == 220
        assert turn.generation_to_reply_request_ms == 70
        assert turn.reply_request_to_audio_start_ms == 490
        assert turn.total_ms == 900
        assert not turn.abandoned
        assert tracker.latest is turn

    def test_skipped_stage_measures_from_previous_filled(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(1000)
        tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 1100)
        tracker.mark_stage(turn, TurnStage.AUDIO_START, 1600)
        tracker.finalize(turn)

        assert turn.transcription_to_generation_start_ms is None
        assert turn.generation_to_reply_request_ms is None
        assert turn.reply_request_to_audio_start_ms == 500
        assert turn.total_ms == 600

    def test_abandoned_turn_keeps_partial_stages(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(0)
        tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 50)
        tracker.abandon(turn)

        assert turn.abandoned
        assert turn.finalized
        assert turn.total_ms == 50
        assert tracker.open_turns == []

    def test_no_stages_total_is_none(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.finalize(tracker.begin_turn(0))
        assert turn.total_ms is None


class TestOutOfOrderMarks:
    def test_earlier_stage_after_later_is_rejected(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(0)
        tracker.mark_stage(turn, TurnStage.GENERATION_START, 300)

        assert not tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 350)
        assert turn.captured_to_transcription_start_ms is None

    def test_same_stage_twice_is_rejected(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(0)
        tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 100)

        assert not tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 200)
        assert turn.captured_to_transcription_start_ms == 100

    def test_timestamp_before_previous_mark_is_rejected(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(500)

        assert not tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 400)
        tracker.mark_stage(turn, TurnStage.TRANSCRIPTION_START, 600)
        assert not tracker.mark_stage(turn, TurnStage.GENERATION_START, 550)

    def test_mark_on_finalized_turn_is_rejected(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(0)
        tracker.finalize(turn)

        assert not tracker.mark_stage(turn, TurnStage.AUDIO_START, 10)


class TestRing:
    def test_oldest_entry_evicted(self) -> None:
        tracker = LatencyTracker(max_entries=3)
        turns = [tracker.finalize(tracker.begin_turn(i)) for i in range(5)]

        assert tracker.entries == turns[2:]

    def test_finalize_is_idempotent(self) -> None:
        tracker = LatencyTracker()
        turn = tracker.begin_turn(0)
        tracker.finalize(turn)
        tracker.finalize(turn, abandoned=True)

        assert len(tracker.entries) == 1
        assert not turn.abandoned

    def test_abandon_open_turns(self) -> None:
        tracker = LatencyTracker()
        first = tracker.begin_turn(0)
        second = tracker.begin_turn(5)
        tracker.abandon_open_turns()

        assert first.abandoned and second.abandoned
        assert tracker.open_turns == []

    def test_averages_skip_missing_stages(self) -> None:
        tracker = LatencyTracker()
        a = tracker.begin_turn(0)
        tracker.mark_stage(a, TurnStage.TRANSCRIPTION_START, 100)
        tracker.mark_stage(a, TurnStage.AUDIO_START, 400)
        tracker.finalize(a)
        b = tracker.begin_turn(0)
        tracker.mark_stage(b, TurnStage.TRANSCRIPTION_START, 300)
        tracker.finalize(b)

        averages = tracker.averages()
        assert averages["captured_to_transcription_start_ms"] == 200
        assert averages["reply_request_to_audio_start_ms"] == 300
        assert averages["generation_to_reply_request_ms"] is None
        assert averages["total_ms"] == 350
