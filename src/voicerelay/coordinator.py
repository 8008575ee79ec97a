"""Turn boundary detection and close-out."""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from voicerelay.arbiter import FinalizationArbiter
from voicerelay.events import DeltaReceived, Speaker, TurnStarted
from voicerelay.tracker import TurnContext, Utterance, UtteranceTracker


class TurnBoundaryCoordinator:
    """Watch for events that open new utterances and close out what came before.

    A new utterance joins the current turn when its speaker slot is free, except
    that the user speaking after the assistant always begins a new round. A
    turn start that joins the round force-finalizes the other speaker. When it
    cannot join, every unsettled utterance is closed out (force-finalized and,
    if still unsettled, relayed as degraded) and the turn index advances. The
    relay history is never touched here.
    """

    def __init__(self, tracker: UtteranceTracker, arbiter: FinalizationArbiter) -> None:
        self._tracker = tracker
        self._arbiter = arbiter
        self.closed_out = 0

    @property
    def turn_index(self) -> int:
        return self._tracker.turn.turn_index

    def on_turn_started(self, event: TurnStarted) -> Utterance | None:
        if not self._tracker.is_retired(event.item_id) and self._tracker.resolve(event.speaker, event.item_id) is None:
            self._boundary(event.speaker, handoff=True)
        return self._tracker.on_turn_started(event.speaker, event.item_id)

    def on_delta(self, event: DeltaReceived) -> Utterance | None:
        if not self._tracker.is_retired(event.item_id) and self._tracker.resolve(event.speaker, event.item_id) is None:
            self._boundary(event.speaker, handoff=False)
        return self._tracker.on_delta(event.speaker, event.text, event.item_id)

    def close_all(self) -> int:
        """Close out every unsettled utterance; used on teardown."""
        return self._close_out(self._tracker.unsettled())

    def _boundary(self, speaker: Speaker, *, handoff: bool) -> None:
        turn = self._tracker.turn
        if self._joins(turn, speaker):
            if handoff:
                # The other speaker has finished talking in this round.
                for member in turn.members():
                    if member.speaker is not speaker:
                        self._arbiter.force_finalize(member)
            return
        closed = self._close_out(self._tracker.unsettled())
        previous = turn.turn_index
        self._tracker.advance_turn()
        logger.info("turn.advanced from={} to={} closed={}", previous, self.turn_index, closed)

    @staticmethod
    def _joins(turn: TurnContext, speaker: Speaker) -> bool:
        if turn.slot(speaker) is not None:
            return False
        return not (speaker is Speaker.USER and turn.assistant is not None)

    def _close_out(self, utterances: Iterable[Utterance]) -> int:
        closed = 0
        for utterance in list(utterances):
            if not utterance.needs_fallback:
                continue
            self._arbiter.close_out(utterance)
            closed += 1
        self.closed_out += closed
        return closed
