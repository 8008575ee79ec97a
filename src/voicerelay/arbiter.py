"""Decide the single finalization moment and relayed value per utterance."""

from __future__ import annotations

import time
from collections.abc import Callable, Coroutine
from typing import Any, TypeAlias

from loguru import logger

from voicerelay.bus import FinalizationNotice, FinalizationSignal
from voicerelay.errors import DuplicateAuthoritativeEvent
from voicerelay.events import Confidence, Speaker, TranscriptionCompleted, TranscriptionFailed
from voicerelay.relay import RelayDeduplicator, RelayOutcome, RelayPayload
from voicerelay.tracker import Utterance, UtteranceStatus, UtteranceTracker

Spawn: TypeAlias = Callable[[Coroutine[Any, Any, RelayOutcome]], Any]


class FinalizationArbiter:
    """Resolve races between local force-finalize and authoritative results.

    Only authoritative completions are relayed as ``authoritative``. Provisional
    values reach the backend solely through :meth:`fallback`, tagged
    ``degraded``, and always through the same deduplicator.
    """

    def __init__(
        self,
        tracker: UtteranceTracker,
        relay: RelayDeduplicator | None,
        notices: FinalizationSignal,
        *,
        spawn: Spawn,
        unavailable_text: str = "[Speech not transcribed]",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tracker = tracker
        self._relay = relay
        self._notices = notices
        self._spawn = spawn
        self._unavailable_text = unavailable_text
        self._clock = clock
        self._notified: set[tuple[str, Confidence]] = set()
        self.duplicates_ignored = 0

    def force_finalize(self, target: Utterance | str) -> str | None:
        """Close an open utterance early and return its provisional text.

        Returns ``None`` when the utterance is unknown or no longer open.
        """

        utterance = self._tracker.get(target) if isinstance(target, str) else target
        if utterance is None or not utterance.is_open:
            return None
        buffered = utterance.provisional_text
        provisional = buffered if buffered.strip() else self._unavailable_text
        self._tracker.mark_force_finalized(utterance, provisional)
        logger.info(
            "arbiter.force_finalized key={} speaker={} chars={}",
            utterance.key,
            utterance.speaker.value,
            len(buffered),
        )
        self._notify(utterance, provisional, Confidence.DEGRADED)
        return provisional

    def on_authoritative(self, event: TranscriptionCompleted | TranscriptionFailed) -> Utterance | None:
        if isinstance(event, TranscriptionCompleted):
            outcome, text, reason = UtteranceStatus.COMPLETED, event.text, ""
        else:
            outcome, text, reason = UtteranceStatus.FAILED, None, event.reason
        try:
            utterance = self._tracker.on_authoritative(
                event.item_id,
                outcome,
                text,
                speaker=event.speaker,
                reason=reason or "transcription failed",
            )
        except DuplicateAuthoritativeEvent as exc:
            self.duplicates_ignored += 1
            logger.debug("arbiter.duplicate_authoritative item_id={}", exc.item_id)
            return None

        final_text = utterance.final_text or ""
        if utterance.status is UtteranceStatus.FAILED:
            logger.warning("arbiter.transcription_failed item_id={} reason={}", event.item_id, reason)
            self._notify(utterance, final_text, Confidence.DEGRADED)
            self._request_relay(utterance, final_text, Confidence.DEGRADED)
        elif final_text.strip():
            self._notify(utterance, final_text, Confidence.AUTHORITATIVE)
            self._request_relay(utterance, final_text, Confidence.AUTHORITATIVE)
        else:
            # The empty transcript itself is never relayed; buffered deltas go out as degraded.
            logger.info("arbiter.empty_completion item_id={}", event.item_id)
            buffered = utterance.provisional_text
            self._notify(utterance, buffered if buffered.strip() else self._unavailable_text, Confidence.DEGRADED)
            self.fallback(utterance)
        return utterance

    def fallback(self, utterance: Utterance) -> bool:
        """Relay buffered text of an utterance the authoritative path never settled."""

        if not utterance.needs_fallback:
            return False
        buffered = utterance.provisional_text
        if not buffered.strip():
            return False
        if self._relay is not None and self._relay.is_claimed(utterance.key):
            return False
        logger.warning(
            "arbiter.degraded_fallback key={} speaker={} status={}",
            utterance.key,
            utterance.speaker.value,
            utterance.status.value,
        )
        return self._request_relay(utterance, buffered, Confidence.DEGRADED)

    def close_out(self, utterance: Utterance) -> None:
        self.force_finalize(utterance)
        self.fallback(utterance)

    def on_response_started(self) -> str | None:
        """A new response is the local trigger for force-finalizing the user's utterance."""

        user = self._tracker.turn.user
        if user is None or not user.is_open:
            return None
        return self.force_finalize(user)

    def _request_relay(self, utterance: Utterance, text: str, confidence: Confidence) -> bool:
        if not text.strip():
            return False
        key = utterance.pin_key()
        if self._relay is None:
            return False
        payload = RelayPayload(
            speaker=utterance.speaker,
            text=text,
            timestamp_ms=self._timestamp_ms(utterance),
            item_id=utterance.item_id,
            confidence=confidence,
        )
        self._spawn(self._deliver(self._relay, utterance, key, payload))
        return True

    @staticmethod
    async def _deliver(
        relay: RelayDeduplicator, utterance: Utterance, key: str, payload: RelayPayload
    ) -> RelayOutcome:
        outcome = await relay.relay_if_new(key, payload)
        if outcome in {RelayOutcome.SENT, RelayOutcome.LOST}:
            utterance.relayed = True
        return outcome

    def _timestamp_ms(self, utterance: Utterance) -> int:
        # User transcripts are ordered by when speech began, assistant ones by when they finished.
        if utterance.speaker is Speaker.USER:
            moment = utterance.started_at
        else:
            moment = utterance.finalized_at or self._clock()
        return int(moment * 1000)

    def _notify(self, utterance: Utterance, text: str, confidence: Confidence) -> None:
        marker = (utterance.local_id, confidence)
        if marker in self._notified:
            return
        self._notified.add(marker)
        self._notices.publish(
            FinalizationNotice(
                speaker=utterance.speaker,
                text=text,
                confidence=confidence,
                item_id=utterance.item_id,
                turn_index=utterance.turn_index,
            )
        )
