from __future__ import annotations

from voicerelay.arbiter import FinalizationArbiter
from voicerelay.bus import FinalizationNotice, FinalizationSignal
from voicerelay.coordinator import TurnBoundaryCoordinator
from voicerelay.events import DeltaReceived, Speaker, TurnStarted
from voicerelay.tracker import UtteranceStatus, UtteranceTracker


def _coordinator() -> tuple[TurnBoundaryCoordinator, UtteranceTracker, list[FinalizationNotice]]:
    tracker = UtteranceTracker()
    notices: list[FinalizationNotice] = []
    signal = FinalizationSignal()
    signal.connect(notices.append)
    arbiter = FinalizationArbiter(tracker, None, signal, spawn=lambda coro: None)
    return TurnBoundaryCoordinator(tracker, arbiter), tracker, notices


def test_user_then_assistant_share_a_round() -> None:
    coordinator, tracker, notices = _coordinator()

    user = coordinator.on_turn_started(TurnStarted(speaker=Speaker.USER, item_id="u1"))
    coordinator.on_delta(DeltaReceived(speaker=Speaker.USER, text="question", item_id="u1"))
    assistant = coordinator.on_turn_started(TurnStarted(speaker=Speaker.ASSISTANT, item_id="a1"))

    assert coordinator.turn_index == 0
    assert tracker.turn.members() == [user, assistant]
    assert user.status is UtteranceStatus.FORCE_FINALIZED
    assert [(n.item_id, n.text) for n in notices] == [("u1", "question")]


def test_user_after_assistant_starts_next_round() -> None:
    coordinator, tracker, _ = _coordinator()

    coordinator.on_turn_started(TurnStarted(speaker=Speaker.USER, item_id="u1"))
    assistant = coordinator.on_turn_started(TurnStarted(speaker=Speaker.ASSISTANT, item_id="a1"))
    coordinator.on_delta(DeltaReceived(speaker=Speaker.ASSISTANT, text="answer", item_id="a1"))
    coordinator.on_delta(DeltaReceived(speaker=Speaker.USER, text="follow up", item_id="u2"))

    assert coordinator.turn_index == 1
    assert assistant.status is UtteranceStatus.FORCE_FINALIZED
    assert tracker.turn.user is tracker.get("u2")
    assert coordinator.closed_out == 1


def test_second_assistant_item_advances_round() -> None:
    coordinator, tracker, _ = _coordinator()

    coordinator.on_turn_started(TurnStarted(speaker=Speaker.ASSISTANT, item_id="a1"))
    coordinator.on_turn_started(TurnStarted(speaker=Speaker.ASSISTANT, item_id="a2"))

    assert coordinator.turn_index == 1
    assert tracker.turn.assistant is tracker.get("a2")


def test_known_item_is_not_a_boundary() -> None:
    coordinator, tracker, _ = _coordinator()

    first = coordinator.on_turn_started(TurnStarted(speaker=Speaker.USER, item_id="u1"))
    again = coordinator.on_turn_started(TurnStarted(speaker=Speaker.USER, item_id="u1"))
    coordinator.on_delta(DeltaReceived(speaker=Speaker.USER, text="x", item_id="u1"))

    assert first is again
    assert coordinator.turn_index == 0
    assert len(tracker) == 1


def test_close_all_finalizes_everything_unsettled() -> None:
    coordinator, tracker, notices = _coordinator()

    coordinator.on_delta(DeltaReceived(speaker=Speaker.USER, text="hi", item_id="u1"))
    coordinator.on_turn_started(TurnStarted(speaker=Speaker.ASSISTANT, item_id="a1"))

    assert coordinator.close_all() == 2
    assert {u.status for u in tracker} == {UtteranceStatus.FORCE_FINALIZED}
    assert [(n.item_id, n.text) for n in notices] == [("u1", "hi"), ("a1", "[Speech not transcribed]")]
