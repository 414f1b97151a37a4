"""Bot state derivation and barge-in handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from guildvoice.errors import ProviderNotConnectedError
from guildvoice.models.enums import BotState
from guildvoice.session.latency import LatencyEntry
from guildvoice.session.state import Session

logger = logging.getLogger("guildvoice.session.turns")


def derive_bot_state(session: Session) -> BotState:
    """Derive the monitoring state of *session*.

    A dead owned connection makes every other signal stale, so it is
    checked first. Otherwise the first matching rule wins: speaking while
    the bot turn is open, processing while user turns or provider
    responses are pending, listening while any capture is open, idle
    otherwise.
    """
    connection = session.connection
    if connection is not None and not connection.get_state().connected:
        return BotState.DISCONNECTED
    if session.bot_turn_open:
        return BotState.SPEAKING
    provider_pending = connection.get_state().pending_turns if connection is not None else 0
    if session.pending_transcription_turns + provider_pending > 0:
        return BotState.PROCESSING
    if session.active_captures:
        return BotState.LISTENING
    return BotState.IDLE


@dataclass
class BargeInOutcome:
    """What happened when a new user turn arrived."""

    superseded_response_id: str | None = None
    cancelled: bool = False
    abandoned_turn: LatencyEntry | None = None

    @property
    def superseded(self) -> bool:
        return self.superseded_response_id is not None


class TurnCoordinator:
    """Coordinates user turns against the bot's in-flight response.

    When a user turn arrives while the provider holds an active response,
    the response is superseded. Providers that can cancel are asked to;
    providers that cannot keep playing the old audio (a soft interruption)
    and the new turn proceeds without waiting for it.
    Superseded reply ids are remembered on the session so the manager can
    keep their late events away from the new turn.
    """

    def derive_state(self, session: Session) -> BotState:
        return derive_bot_state(session)

    async def handle_user_turn(self, session: Session) -> BargeInOutcome:
        outcome = BargeInOutcome(abandoned_turn=self._abandon_current_turn(session))
        connection = session.connection
        if connection is None or connection.get_state().active_response_id is None:
            return outcome

        response_id = connection.get_state().active_response_id
        try:
            outcome.cancelled = await connection.cancel_active_response()
        except ProviderNotConnectedError:
            logger.warning("Cancel skipped for guild %s: socket is not open", session.guild_id)
        outcome.superseded_response_id = connection.supersede_active_response() or response_id
        session.remember_superseded(outcome.superseded_response_id, cancelled=outcome.cancelled)

        if outcome.cancelled:
            session.bot_turn_open = False
        elif not connection.native_response_ids:
            # Late audio from the old reply is indistinguishable from the new one
            # until the provider announces the reply to this turn.
            session.awaiting_reply_request = True

        logger.info(
            "pending_response_superseded guild=%s response=%s cancelled=%s",
            session.guild_id,
            outcome.superseded_response_id,
            outcome.cancelled,
        )
        return outcome

    def _abandon_current_turn(self, session: Session) -> LatencyEntry | None:
        turn = session.current_turn
        if turn is None:
            return None
        session.current_turn = None
        if turn.finalized:
            return None
        session.latency.abandon(turn)
        session.pending_transcription_turns = max(0, session.pending_transcription_turns - 1)
        return turn
