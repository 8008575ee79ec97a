"""Per-speaker utterance state machine."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from voicerelay.errors import AuthoritativeFailure, DuplicateAuthoritativeEvent
from voicerelay.events import Speaker


class UtteranceStatus(str, Enum):
    OPEN = "open"
    FORCE_FINALIZED = "force_finalized"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({UtteranceStatus.COMPLETED, UtteranceStatus.FAILED})


def _local_id() -> str:
    return f"local_{uuid.uuid4().hex[:12]}"


@dataclass(eq=False)
class Utterance:
    """One speaker's contribution within a turn."""

    speaker: Speaker
    item_id: str | None = None
    turn_index: int = 0
    fragments: list[str] = field(default_factory=list)
    status: UtteranceStatus = UtteranceStatus.OPEN
    final_text: str | None = None
    provisional_final: str | None = None
    relayed: bool = False
    failure: AuthoritativeFailure | None = None
    started_at: float = field(default_factory=time.time)
    finalized_at: float | None = None
    local_id: str = field(default_factory=_local_id)
    relay_key: str | None = None

    @property
    def key(self) -> str:
        """Identity used for relay deduplication; fixed once a relay was requested."""
        return self.relay_key or self.item_id or self.local_id

    def pin_key(self) -> str:
        self.relay_key = self.key
        return self.relay_key

    @property
    def provisional_text(self) -> str:
        return "".join(self.fragments)

    @property
    def is_open(self) -> bool:
        return self.status is UtteranceStatus.OPEN

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def relay_requested(self) -> bool:
        return self.relay_key is not None

    @property
    def needs_fallback(self) -> bool:
        """Whether closing this utterance could still require a degraded relay."""
        if self.relayed or self.relay_requested:
            return False
        if self.is_open:
            return True
        if self.status is UtteranceStatus.FORCE_FINALIZED:
            return bool(self.provisional_text.strip())
        return (
            self.status is UtteranceStatus.COMPLETED
            and not (self.final_text or "").strip()
            and bool(self.provisional_text.strip())
        )


@dataclass
class TurnContext:
    """The user and assistant utterances of one conversational round."""

    turn_index: int = 0
    user: Utterance | None = None
    assistant: Utterance | None = None

    def slot(self, speaker: Speaker) -> Utterance | None:
        return self.user if speaker is Speaker.USER else self.assistant

    def assign(self, utterance: Utterance) -> None:
        if utterance.speaker is Speaker.USER:
            self.user = utterance
        else:
            self.assistant = utterance

    def members(self) -> list[Utterance]:
        return [utterance for utterance in (self.user, self.assistant) if utterance is not None]


class UtteranceTracker:
    """Own every utterance of a session and apply its state transitions.

    The tracker never relays and never decides when a turn ends; it only applies
    deltas, identifier bindings, force-finalize marks, and authoritative results.
    """

    def __init__(
        self,
        *,
        unavailable_text: str = "[Speech not transcribed]",
        rate_limited_text: str = "[Rate limit exceeded]",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._unavailable_text = unavailable_text
        self._rate_limited_text = rate_limited_text
        self._clock = clock
        self._utterances: list[Utterance] = []
        self._by_item: dict[str, Utterance] = {}
        self._retired: set[str] = set()
        self.turn = TurnContext()
        self.stale_deltas = 0

    def __iter__(self) -> Iterator[Utterance]:
        return iter(list(self._utterances))

    def __len__(self) -> int:
        return len(self._utterances)

    def get(self, item_id: str) -> Utterance | None:
        return self._by_item.get(item_id)

    def is_retired(self, item_id: str | None) -> bool:
        return item_id is not None and item_id in self._retired

    def resolve(self, speaker: Speaker, item_id: str | None = None) -> Utterance | None:
        """Return the utterance an event for ``speaker``/``item_id`` would attach to."""

        if item_id is not None:
            known = self._by_item.get(item_id)
            if known is not None:
                return known
            return self._binding_candidate(speaker)
        current = self.turn.slot(speaker)
        if current is not None and current.is_open:
            return current
        return self._binding_candidate(speaker)

    def on_delta(self, speaker: Speaker, text: str, item_id: str | None = None) -> Utterance | None:
        """Append a provisional fragment; returns ``None`` when the delta is stale."""

        if self.is_retired(item_id):
            self._reject_stale(item_id)
            return None
        utterance = self.resolve(speaker, item_id)
        if utterance is None:
            utterance = self._create(speaker, item_id)
        elif item_id is not None and utterance.item_id is None:
            self._bind(utterance, item_id)
        if utterance.is_terminal:
            self._reject_stale(utterance.key)
            return None
        if text:
            utterance.fragments.append(text)
        return utterance

    def on_turn_started(self, speaker: Speaker, item_id: str) -> Utterance | None:
        """Bind ``item_id`` to the speaker's open unbound utterance, or open a new one."""

        if self.is_retired(item_id):
            logger.debug("tracker.turn_start_for_retired item_id={}", item_id)
            return None
        known = self._by_item.get(item_id)
        if known is not None:
            return known
        candidate = self._binding_candidate(speaker)
        if candidate is not None:
            self._bind(candidate, item_id)
            return candidate
        return self._create(speaker, item_id)

    def on_authoritative(
        self,
        item_id: str,
        outcome: UtteranceStatus,
        text: str | None = None,
        *,
        speaker: Speaker | None = None,
        reason: str = "transcription failed",
    ) -> Utterance:
        """Apply the remote session's final result for ``item_id``.

        Raises:
            DuplicateAuthoritativeEvent: if a result was already applied
        """

        if outcome not in TERMINAL_STATUSES:
            raise ValueError(f"authoritative outcome must be completed or failed, got {outcome}")
        if self.is_retired(item_id):
            raise DuplicateAuthoritativeEvent(item_id)

        utterance = self._by_item.get(item_id)
        if utterance is None:
            utterance = self._authoritative_candidate(speaker or Speaker.USER)
            if utterance is not None:
                self._bind(utterance, item_id)
            else:
                utterance = self._create(speaker or Speaker.USER, item_id, place=False)
        if utterance.is_terminal:
            raise DuplicateAuthoritativeEvent(item_id)

        if outcome is UtteranceStatus.COMPLETED:
            utterance.final_text = text or ""
        else:
            utterance.failure = AuthoritativeFailure(item_id, reason)
            utterance.final_text = self._failure_text(utterance, utterance.failure)
        utterance.status = outcome
        utterance.finalized_at = self._clock()
        return utterance

    def mark_force_finalized(self, utterance: Utterance, provisional: str) -> bool:
        if not utterance.is_open:
            return False
        utterance.status = UtteranceStatus.FORCE_FINALIZED
        utterance.provisional_final = provisional
        utterance.finalized_at = self._clock()
        return True

    def unsettled(self) -> list[Utterance]:
        """Utterances that still need a close-out (force finalize and/or fallback relay)."""
        return [utterance for utterance in self._utterances if utterance.needs_fallback]

    def advance_turn(self) -> TurnContext:
        """Start a new turn context and retire settled utterances of earlier turns.

        An utterance is settled once a relay was requested for it, or once it is
        terminal with nothing left to relay. Force-finalized utterances that
        never carried text stay live so a late authoritative result can still
        be relayed.
        """

        for utterance in list(self._utterances):
            if utterance.relay_requested or (utterance.is_terminal and not utterance.needs_fallback):
                self._retire(utterance)
        self.turn = TurnContext(turn_index=self.turn.turn_index + 1)
        return self.turn

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in UtteranceStatus}
        for utterance in self._utterances:
            counts[utterance.status.value] += 1
        counts["retired"] = len(self._retired)
        counts["stale_deltas"] = self.stale_deltas
        return counts

    def _create(self, speaker: Speaker, item_id: str | None, *, place: bool = True) -> Utterance:
        utterance = Utterance(
            speaker=speaker,
            item_id=item_id,
            turn_index=self.turn.turn_index,
            started_at=self._clock(),
        )
        self._utterances.append(utterance)
        if item_id is not None:
            self._by_item[item_id] = utterance
        if place:
            self.turn.assign(utterance)
        logger.debug(
            "tracker.utterance_created key={} speaker={} turn={}",
            utterance.key,
            speaker.value,
            utterance.turn_index,
        )
        return utterance

    def _bind(self, utterance: Utterance, item_id: str) -> None:
        utterance.item_id = item_id
        self._by_item[item_id] = utterance
        logger.debug("tracker.item_bound item_id={} local_id={}", item_id, utterance.local_id)

    def _binding_candidate(self, speaker: Speaker) -> Utterance | None:
        for utterance in reversed(self._utterances):
            if utterance.speaker is speaker and utterance.item_id is None and utterance.is_open:
                return utterance
        return None

    def _authoritative_candidate(self, speaker: Speaker) -> Utterance | None:
        # Deltas may have arrived without an identifier and been force-finalized already.
        for utterance in reversed(self._utterances):
            if utterance.speaker is speaker and utterance.item_id is None and not utterance.is_terminal:
                return utterance
        return None

    def _failure_text(self, utterance: Utterance, failure: AuthoritativeFailure) -> str:
        buffered = utterance.provisional_text
        if buffered.strip():
            return buffered
        return self._rate_limited_text if failure.rate_limited else self._unavailable_text

    def _retire(self, utterance: Utterance) -> None:
        self._utterances.remove(utterance)
        if utterance.item_id is not None:
            self._by_item.pop(utterance.item_id, None)
            self._retired.add(utterance.item_id)

    def _reject_stale(self, key: str | None) -> None:
        self.stale_deltas += 1
        logger.debug("tracker.stale_delta key={}", key)
